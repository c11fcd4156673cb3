"""Identifier vocabulary shared by every enrichment source."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional


class IdentifierType(str, Enum):
    """Kinds of external identifier a publication can carry."""
    DOI = "doi"
    ARXIV = "arxiv"
    BIBCODE = "bibcode"
    PMID = "pmid"
    SEMANTIC_SCHOLAR = "semanticscholar"
    OPENALEX = "openalex"

    @classmethod
    def parse(cls, value: str) -> "IdentifierType":
        """Look up an identifier kind by its string name (case-insensitive)."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown identifier type: {value}") from None


IdentifierMap = Dict[IdentifierType, str]


def clean_identifiers(identifiers: Optional[Mapping[IdentifierType, str]]) -> IdentifierMap:
    """Return a copy of the map with whitespace trimmed and blank values dropped."""
    cleaned: IdentifierMap = {}
    for kind, value in (identifiers or {}).items():
        if value is None:
            continue
        value = str(value).strip()
        if value:
            cleaned[kind] = value
    return cleaned


def merge_identifiers(base: Mapping[IdentifierType, str],
                      other: Mapping[IdentifierType, str]) -> IdentifierMap:
    """Combine two identifier maps. Values from ``other`` win on conflicts."""
    merged = dict(base)
    merged.update(clean_identifiers(other))
    return merged


def identifiers_from(doi: Optional[str] = None, arxiv_id: Optional[str] = None,
                     bibcode: Optional[str] = None, pmid: Optional[str] = None,
                     semantic_scholar_id: Optional[str] = None,
                     openalex_id: Optional[str] = None) -> IdentifierMap:
    """Build an identifier map from keyword arguments, skipping empty ones."""
    return clean_identifiers({
        IdentifierType.DOI: doi,
        IdentifierType.ARXIV: arxiv_id,
        IdentifierType.BIBCODE: bibcode,
        IdentifierType.PMID: pmid,
        IdentifierType.SEMANTIC_SCHOLAR: semantic_scholar_id,
        IdentifierType.OPENALEX: openalex_id,
    })


def identifiers_to_dict(identifiers: Mapping[IdentifierType, str]) -> Dict[str, str]:
    """Serialize an identifier map with plain string keys (for JSON)."""
    return {kind.value: value for kind, value in identifiers.items()}


def identifiers_from_dict(data: Optional[Mapping[str, str]]) -> IdentifierMap:
    """Inverse of :func:`identifiers_to_dict`. Unknown kinds are ignored."""
    identifiers: IdentifierMap = {}
    for key, value in (data or {}).items():
        try:
            identifiers[IdentifierType.parse(key)] = value
        except ValueError:
            continue
    return clean_identifiers(identifiers)


@dataclass
class SearchResult:
    """A bibliographic search hit, as produced by a search source."""
    id: str
    source_id: str
    title: str = ""
    authors: List[str] = field(default_factory=list)
    year: Optional[int] = None
    doi: Optional[str] = None
    arxiv_id: Optional[str] = None
    pmid: Optional[str] = None
    bibcode: Optional[str] = None
    semantic_scholar_id: Optional[str] = None
    openalex_id: Optional[str] = None

    def all_identifiers(self) -> IdentifierMap:
        """Every identifier this result carries."""
        return identifiers_from(
            doi=self.doi,
            arxiv_id=self.arxiv_id,
            bibcode=self.bibcode,
            pmid=self.pmid,
            semantic_scholar_id=self.semantic_scholar_id,
            openalex_id=self.openalex_id,
        )
