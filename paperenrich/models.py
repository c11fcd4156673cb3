"""Data model for enrichment results, queue items and progress reporting."""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum, Flag, IntEnum, auto
from typing import Any, Dict, List, Optional

from .identifiers import IdentifierMap
from .utils import parse_timestamp, utcnow


class EnrichmentCapability(Flag):
    """Categories of data a source can supply. Combine with ``|``."""
    CITATION_COUNT = auto()
    REFERENCES = auto()
    CITATIONS = auto()
    AUTHOR_STATS = auto()
    ABSTRACT = auto()
    PDF_URL = auto()
    OPEN_ACCESS = auto()
    VENUE = auto()

    @classmethod
    def all(cls) -> "EnrichmentCapability":
        result = cls(0)
        for member in cls:
            result |= member
        return result


class OpenAccessStatus(str, Enum):
    """Open access classification (Unpaywall vocabulary)."""
    CLOSED = "closed"
    GOLD = "gold"
    GREEN = "green"
    BRONZE = "bronze"
    HYBRID = "hybrid"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "OpenAccessStatus":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass
class PaperStub:
    """Lightweight record for a referenced or citing paper."""
    id: str
    title: str = ""
    authors: List[str] = field(default_factory=list)
    year: Optional[int] = None
    venue: Optional[str] = None
    doi: Optional[str] = None
    arxiv_id: Optional[str] = None
    citation_count: Optional[int] = None
    reference_count: Optional[int] = None
    is_open_access: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaperStub":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AuthorStats:
    """Bibliometric statistics for one author."""
    author_id: str
    name: str
    h_index: Optional[int] = None
    citation_count: Optional[int] = None
    paper_count: Optional[int] = None
    affiliations: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorStats":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _is_present(value: Any) -> bool:
    """True for values that should win a merge. Zero counts are present."""
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return True


# Fields taken from the newer snapshot only when present there
MERGEABLE_FIELDS = (
    'citation_count',
    'reference_count',
    'abstract',
    'pdf_urls',
    'open_access_status',
    'venue',
    'references',
    'citations',
    'author_stats',
)


@dataclass
class EnrichmentData:
    """Normalized enrichment snapshot produced by one source.

    Every snapshot carries the id of the source that produced it and the
    time it was fetched.
    """
    source: str
    citation_count: Optional[int] = None
    reference_count: Optional[int] = None
    abstract: Optional[str] = None
    pdf_urls: Optional[List[str]] = None
    open_access_status: Optional[OpenAccessStatus] = None
    venue: Optional[str] = None
    references: Optional[List[PaperStub]] = None
    citations: Optional[List[PaperStub]] = None
    author_stats: Optional[List[AuthorStats]] = None
    fetched_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.source:
            raise ValueError("EnrichmentData requires a source")
        if self.fetched_at is None:
            self.fetched_at = utcnow()

    def merged_with(self, existing: Optional["EnrichmentData"]) -> "EnrichmentData":
        """Merge this (newer) snapshot over ``existing``.

        Each field keeps the new value when it is present and falls back to
        the existing one otherwise. ``source`` and ``fetched_at`` always
        come from this snapshot.
        """
        if existing is None:
            return self
        values = {}
        for name in MERGEABLE_FIELDS:
            new_value = getattr(self, name)
            values[name] = new_value if _is_present(new_value) else getattr(existing, name)
        return EnrichmentData(source=self.source, fetched_at=self.fetched_at, **values)

    @property
    def is_open_access(self) -> bool:
        return self.open_access_status not in (None, OpenAccessStatus.CLOSED, OpenAccessStatus.UNKNOWN)

    @property
    def primary_pdf_url(self) -> Optional[str]:
        return self.pdf_urls[0] if self.pdf_urls else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible types."""
        return {
            'source': self.source,
            'fetched_at': self.fetched_at.isoformat(),
            'citation_count': self.citation_count,
            'reference_count': self.reference_count,
            'abstract': self.abstract,
            'pdf_urls': self.pdf_urls,
            'open_access_status': self.open_access_status.value if self.open_access_status else None,
            'venue': self.venue,
            'references': [r.to_dict() for r in self.references] if self.references is not None else None,
            'citations': [c.to_dict() for c in self.citations] if self.citations is not None else None,
            'author_stats': [a.to_dict() for a in self.author_stats] if self.author_stats is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrichmentData":
        """Rebuild a snapshot serialized with :meth:`to_dict`."""
        def stubs(key):
            items = data.get(key)
            return [PaperStub.from_dict(item) for item in items] if items is not None else None

        status = data.get('open_access_status')
        authors = data.get('author_stats')
        return cls(
            source=data['source'],
            fetched_at=parse_timestamp(data.get('fetched_at')) or utcnow(),
            citation_count=data.get('citation_count'),
            reference_count=data.get('reference_count'),
            abstract=data.get('abstract'),
            pdf_urls=data.get('pdf_urls'),
            open_access_status=OpenAccessStatus.from_value(status) if status else None,
            venue=data.get('venue'),
            references=stubs('references'),
            citations=stubs('citations'),
            author_stats=[AuthorStats.from_dict(a) for a in authors] if authors is not None else None,
        )


@dataclass
class EnrichmentResult:
    """Enrichment data plus the identifier map as enlarged during the fetch."""
    data: EnrichmentData
    resolved_identifiers: IdentifierMap = field(default_factory=dict)


class EnrichmentPriority(IntEnum):
    """Queue service tiers. Lower values are served first."""
    USER_TRIGGERED = 0
    LIBRARY_PAPER = 1
    BACKGROUND = 2


@dataclass
class QueueItem:
    publication_id: str
    identifiers: IdentifierMap
    priority: EnrichmentPriority = EnrichmentPriority.BACKGROUND
    queued_at: datetime = field(default_factory=utcnow)


@dataclass
class EnrichmentOutcome:
    """Tagged result of processing one queued item. Exactly one of
    ``result`` and ``error`` is set."""
    result: Optional[EnrichmentResult] = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, result: EnrichmentResult) -> "EnrichmentOutcome":
        return cls(result=result)

    @classmethod
    def failure(cls, error: Exception) -> "EnrichmentOutcome":
        return cls(error=error)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ProgressStatus(str, Enum):
    IDLE = "idle"
    ENRICHING = "enriching"
    COMPLETED = "completed"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class EnrichmentProgressState:
    """Snapshot of background enrichment progress for display."""
    status: ProgressStatus = ProgressStatus.IDLE
    completed_count: int = 0
    total_count: int = 0
    current_operation: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def idle(cls) -> "EnrichmentProgressState":
        return cls()

    @classmethod
    def enriching(cls, completed: int, total: int, current: Optional[str] = None) -> "EnrichmentProgressState":
        return cls(status=ProgressStatus.ENRICHING, completed_count=completed,
                   total_count=total, current_operation=current)

    @classmethod
    def completed(cls, count: int) -> "EnrichmentProgressState":
        return cls(status=ProgressStatus.COMPLETED, completed_count=count, total_count=count)

    @classmethod
    def error(cls, message: str) -> "EnrichmentProgressState":
        return cls(status=ProgressStatus.ERROR, last_error=message)

    @property
    def progress(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return self.completed_count / self.total_count

    @property
    def is_active(self) -> bool:
        return self.status == ProgressStatus.ENRICHING

    @property
    def status_message(self) -> str:
        if self.status == ProgressStatus.ENRICHING:
            return f"Enriching {self.completed_count}/{self.total_count}"
        if self.status == ProgressStatus.COMPLETED:
            return f"Enriched {self.completed_count} papers"
        if self.status == ProgressStatus.PAUSED:
            return "Paused"
        if self.status == ProgressStatus.ERROR:
            return f"Error: {self.last_error}" if self.last_error else "Error"
        return "Ready"


@dataclass
class EnrichmentStatistics:
    """Library-wide enrichment counts."""
    total_enriched: int = 0
    stale_count: int = 0
    never_enriched_count: int = 0

    @property
    def needs_enrichment(self) -> int:
        return self.stale_count + self.never_enriched_count
