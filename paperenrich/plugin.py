"""
Base interface for enrichment sources.
Every source (OpenAlex, Semantic Scholar, ADS, ...) and every test double
implements this interface; the service only ever sees this type.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import FrozenSet, Optional

from .identifiers import IdentifierMap, IdentifierType, clean_identifiers
from .models import EnrichmentCapability, EnrichmentData, EnrichmentResult
from .rate_limiter import RateLimit, RateLimiter


@dataclass(frozen=True)
class SourceMetadata:
    """Static description of a source."""
    id: str
    name: str
    description: str = ""
    rate_limit: Optional[RateLimit] = None


class EnrichmentPlugin(ABC):
    """Abstract base class for enrichment sources.

    Subclasses declare ``metadata``, ``capabilities`` and
    ``supported_identifiers`` and implement ``enrich``. ``can_enrich`` is
    fixed: a source is eligible exactly when one of the identifier kinds it
    understands is present.
    """

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self.logger = logging.getLogger(__name__)
        if rate_limiter is None:
            rate_limiter = RateLimiter(self.metadata.rate_limit, name=self.metadata.id)
        self.rate_limiter = rate_limiter

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if 'can_enrich' in cls.__dict__:
            raise TypeError(f"{cls.__name__} must not override can_enrich")

    @property
    @abstractmethod
    def metadata(self) -> SourceMetadata:
        """Source id, display name and rate limit."""

    @property
    @abstractmethod
    def capabilities(self) -> EnrichmentCapability:
        """Kinds of data this source can fill. Assumed static."""

    @property
    @abstractmethod
    def supported_identifiers(self) -> FrozenSet[IdentifierType]:
        """Identifier kinds this source can look papers up by."""

    @property
    def source_id(self) -> str:
        return self.metadata.id

    @property
    def name(self) -> str:
        return self.metadata.name

    def supports(self, capability: EnrichmentCapability) -> bool:
        """True if every flag in ``capability`` is advertised."""
        return (self.capabilities & capability) == capability

    def can_enrich(self, identifiers: IdentifierMap) -> bool:
        cleaned = clean_identifiers(identifiers)
        return any(kind in cleaned for kind in self.supported_identifiers)

    def resolve_identifier(self, identifiers: IdentifierMap) -> IdentifierMap:
        """Best-effort expansion of the identifier map without a full fetch.

        Never raises; on any failure the input is returned unchanged.
        """
        try:
            return self._resolve(dict(identifiers))
        except Exception as e:
            self.logger.debug(f"{self.source_id}: identifier resolution failed: {e}")
            return identifiers

    def _resolve(self, identifiers: IdentifierMap) -> IdentifierMap:
        """Hook for subclasses. Default: no resolution."""
        return identifiers

    @abstractmethod
    def enrich(self, identifiers: IdentifierMap,
               existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        """Fetch, parse and merge enrichment data for the paper.

        Raises:
            EnrichmentError: one of its subclasses on failure
        """

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.source_id}>"
