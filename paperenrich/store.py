"""Publication store module: persistent library of publications and their enrichment."""

import hashlib
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .identifiers import (
    IdentifierMap,
    identifiers_from_dict,
    identifiers_to_dict,
    merge_identifiers,
)
from .models import EnrichmentData, EnrichmentResult
from .scheduler import StalePublication, StalePublicationProvider
from .utils import parse_timestamp, utcnow


def make_publication_id(identifiers: IdentifierMap) -> str:
    """Generate a stable id for a publication from its identifiers."""
    content = "|".join(f"{kind.value}={value.lower()}" for kind, value in sorted(
        identifiers.items(), key=lambda item: item[0].value
    ))
    return hashlib.sha256(content.encode('utf-8')).hexdigest()[:16]


class PublicationStore(StalePublicationProvider):
    """JSON-file store of publications, their identifiers and latest enrichment.

    Also serves as the publication source for the background scheduler.
    """

    def __init__(self, store_file: str = "data/publications.json"):
        self.store_file = Path(store_file)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self.data: Dict[str, Dict] = {}
        self.load()

    def load(self) -> None:
        """Load existing store from disk."""
        with self._lock:
            if self.store_file.exists():
                try:
                    with open(self.store_file, 'r', encoding='utf-8') as f:
                        self.data = json.load(f)
                    self.logger.info(f"Loaded store with {len(self.data)} publications")
                except (OSError, ValueError) as e:
                    self.logger.warning(f"Failed to load publication store: {e}")
                    self.data = {}
            else:
                self.data = {}

    def save(self) -> None:
        """Save current store to disk."""
        with self._lock:
            try:
                self.store_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.store_file, 'w', encoding='utf-8') as f:
                    json.dump(self.data, f, indent=2, ensure_ascii=False)
                self.logger.info(f"Saved store with {len(self.data)} publications")
            except OSError as e:
                self.logger.error(f"Failed to save publication store: {e}")

    def add_publication(self, identifiers: IdentifierMap, title: Optional[str] = None,
                        publication_id: Optional[str] = None) -> str:
        """Record a publication, or update the identifiers of a known one.

        Returns:
            The publication id
        """
        publication_id = publication_id or make_publication_id(identifiers)
        with self._lock:
            item = self.data.get(publication_id)
            if item is None:
                self.data[publication_id] = {
                    'title': title,
                    'identifiers': identifiers_to_dict(identifiers),
                    'added_at': utcnow().isoformat(),
                    'enriched_at': None,
                    'enrichment': None,
                }
                self.logger.debug(f"Added publication {publication_id}")
            else:
                merged = merge_identifiers(identifiers_from_dict(item['identifiers']), identifiers)
                item['identifiers'] = identifiers_to_dict(merged)
                if title:
                    item['title'] = title
        return publication_id

    def __contains__(self, publication_id: str) -> bool:
        with self._lock:
            return publication_id in self.data

    def __len__(self) -> int:
        with self._lock:
            return len(self.data)

    def publication_ids(self) -> List[str]:
        with self._lock:
            return list(self.data)

    def get_title(self, publication_id: str) -> Optional[str]:
        with self._lock:
            item = self.data.get(publication_id)
            return item.get('title') if item else None

    def get_identifiers(self, publication_id: str) -> IdentifierMap:
        with self._lock:
            item = self.data.get(publication_id)
            return identifiers_from_dict(item['identifiers']) if item else {}

    def get_enrichment(self, publication_id: str) -> Optional[EnrichmentData]:
        """Stored enrichment snapshot, or None if never enriched."""
        with self._lock:
            item = self.data.get(publication_id)
            snapshot = item.get('enrichment') if item else None
        if not snapshot:
            return None
        try:
            return EnrichmentData.from_dict(snapshot)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.warning(f"Failed to deserialize enrichment for {publication_id}: {e}")
            return None

    def get_enriched_at(self, publication_id: str) -> Optional[datetime]:
        with self._lock:
            item = self.data.get(publication_id)
            return parse_timestamp(item.get('enriched_at')) if item else None

    def save_result(self, publication_id: str, result: EnrichmentResult) -> None:
        """Store an enrichment result and the enlarged identifier map.

        The result's data is merged over whatever was stored before.
        """
        existing = self.get_enrichment(publication_id)
        merged = result.data.merged_with(existing)
        with self._lock:
            item = self.data.setdefault(publication_id, {
                'title': None,
                'identifiers': {},
                'added_at': utcnow().isoformat(),
            })
            identifiers = merge_identifiers(
                identifiers_from_dict(item.get('identifiers')), result.resolved_identifiers
            )
            item['identifiers'] = identifiers_to_dict(identifiers)
            item['enrichment'] = merged.to_dict()
            item['enriched_at'] = merged.fetched_at.isoformat()
        self.logger.debug(f"Stored enrichment for {publication_id} from {merged.source}")

    def iter_publications(self) -> Iterator[StalePublication]:
        with self._lock:
            snapshot = [(pid, dict(item)) for pid, item in self.data.items()]
        for publication_id, item in snapshot:
            yield StalePublication(
                publication_id=publication_id,
                identifiers=identifiers_from_dict(item.get('identifiers')),
                last_enriched_at=parse_timestamp(item.get('enriched_at')),
            )

    def remove(self, publication_id: str) -> bool:
        with self._lock:
            return self.data.pop(publication_id, None) is not None

    def get_stats(self) -> Dict[str, int]:
        """Get statistics about the store."""
        with self._lock:
            total = len(self.data)
            enriched = sum(1 for item in self.data.values() if item.get('enriched_at'))
        return {
            'total_publications': total,
            'enriched_publications': enriched,
            'unenriched_publications': total - enriched,
        }
