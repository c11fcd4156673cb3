"""Wires sources, service, scheduler and publication store together."""

import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .models import EnrichmentPriority, EnrichmentResult
from .plugin import EnrichmentPlugin
from .rate_limiter import RateLimit
from .retry import RetryPolicy
from .scheduler import BackgroundScheduler, is_stale
from .service import EnrichmentService
from .settings import SettingsProvider
from .sources import ADSSource, ArxivSource, OpenAlexSource, SemanticScholarSource
from .store import PublicationStore
from .tracker import FailedRequestTracker
from .utils import utcnow


# Publications enriched more recently than this are not re-queued on demand
RECENT_ENRICHMENT_WINDOW = timedelta(days=1)


def _credential(env_var: str, configured: Optional[str]) -> Optional[str]:
    """Environment value, else the configured one. Unresolved ${VAR} placeholders count as unset."""
    value = os.environ.get(env_var) or configured
    if not value or value.startswith("${"):
        return None
    return value


def build_sources(sources_config: Optional[Dict[str, Dict[str, Any]]] = None) -> List[EnrichmentPlugin]:
    """Instantiate the enabled sources from the ``sources:`` config section.

    Credentials are read from the environment first, then from the config.
    """
    sources_config = sources_config or {}
    plugins: List[EnrichmentPlugin] = []

    def section(name: str) -> Dict[str, Any]:
        return sources_config.get(name) or {}

    def http_kwargs(config: Dict[str, Any], cls) -> Dict[str, Any]:
        kwargs = {
            'timeout': config.get('timeout', 15),
            'rate_limit': RateLimit.from_config(config, cls.DEFAULT_RATE_LIMIT),
        }
        if config.get('base_url'):
            kwargs['base_url'] = config['base_url']
        return kwargs

    config = section('openalex')
    if config.get('enabled', True):
        plugins.append(OpenAlexSource(
            email=_credential('OPENALEX_EMAIL', config.get('email')),
            **http_kwargs(config, OpenAlexSource)
        ))

    config = section('semanticscholar')
    if config.get('enabled', True):
        plugins.append(SemanticScholarSource(
            api_key=_credential('SEMANTIC_SCHOLAR_API_KEY', config.get('api_key')),
            **http_kwargs(config, SemanticScholarSource)
        ))

    config = section('ads')
    if config.get('enabled', True):
        plugins.append(ADSSource(
            api_key=_credential('ADS_API_KEY', config.get('api_key')),
            **http_kwargs(config, ADSSource)
        ))

    config = section('arxiv')
    if config.get('enabled', True):
        plugins.append(ArxivSource(
            rate_limit=RateLimit.from_config(config, ArxivSource.DEFAULT_RATE_LIMIT)
        ))

    return plugins


class EnrichmentCoordinator:
    """Owns one service, tracker and scheduler for a publication store.

    Successful queued enrichments are written back to the store.
    """

    def __init__(self, store: PublicationStore, settings_provider: SettingsProvider,
                 plugins: Optional[List[EnrichmentPlugin]] = None,
                 check_interval: float = 3600.0, items_per_cycle: int = 50,
                 retry_policy: Optional[RetryPolicy] = None):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.settings_provider = settings_provider
        self.tracker = FailedRequestTracker()
        self.retry_policy = retry_policy or RetryPolicy()
        self.service = EnrichmentService(
            plugins if plugins is not None else build_sources(),
            settings_provider=settings_provider,
            tracker=self.tracker,
        )
        self.scheduler = BackgroundScheduler(
            self.service,
            store,
            settings_provider=settings_provider,
            check_interval=check_interval,
            items_per_cycle=items_per_cycle,
            retry_policy=self.retry_policy,
        )
        self._started = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], store: PublicationStore,
                    settings_provider: SettingsProvider) -> "EnrichmentCoordinator":
        scheduler_config = config.get('scheduler') or {}
        return cls(
            store,
            settings_provider,
            plugins=build_sources(config.get('sources')),
            check_interval=float(scheduler_config.get('check_interval_seconds', 3600)),
            items_per_cycle=int(scheduler_config.get('items_per_cycle', 50)),
            retry_policy=RetryPolicy.from_config(config.get('retry')),
        )

    def _on_enrichment_complete(self, publication_id: str, result: EnrichmentResult) -> None:
        self.store.save_result(publication_id, result)

    def attach_store(self) -> None:
        """Persist successful queued enrichments to the store."""
        self.service.on_enrichment_complete = self._on_enrichment_complete

    def start(self) -> None:
        if self._started:
            return
        self.attach_store()
        self.service.start_background_sync()
        self.scheduler.start()
        self._started = True
        self.logger.info("Enrichment coordinator started")

    def stop(self, timeout: Optional[float] = None) -> None:
        if not self._started:
            return
        self.scheduler.stop(timeout)
        self.service.stop_background_sync(timeout)
        self.store.save()
        self._started = False
        self.logger.info("Enrichment coordinator stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    def queue_publication(self, publication_id: str,
                          priority: EnrichmentPriority = EnrichmentPriority.USER_TRIGGERED) -> bool:
        """Queue one stored publication unless it has no identifiers or was
        enriched within the last day. Returns whether it was queued."""
        identifiers = self.store.get_identifiers(publication_id)
        if not identifiers:
            self.logger.debug(f"Not queueing {publication_id}: no identifiers")
            return False
        enriched_at = self.store.get_enriched_at(publication_id)
        if enriched_at is not None and utcnow() - enriched_at < RECENT_ENRICHMENT_WINDOW:
            self.logger.debug(f"Not queueing {publication_id}: enriched recently")
            return False
        self.service.queue_for_enrichment(publication_id, identifiers, priority)
        return True

    def queue_unenriched(self, priority: EnrichmentPriority = EnrichmentPriority.LIBRARY_PAPER) -> int:
        """Queue every stored publication that was never enriched or is stale."""
        refresh_days = self.settings_provider.refresh_interval_days
        now = utcnow()
        queued = 0
        for publication in self.store.iter_publications():
            if not publication.identifiers:
                continue
            if not is_stale(publication.last_enriched_at, refresh_days, now):
                continue
            self.service.queue_for_enrichment(publication.publication_id, publication.identifiers, priority)
            queued += 1
        self.logger.info(f"Queued {queued} publications for enrichment")
        return queued

    def drain(self) -> Dict[str, int]:
        """Process the whole queue synchronously. Returns success/failure counts."""
        self.attach_store()
        counts = {'succeeded': 0, 'failed': 0}
        while True:
            outcome = self.service.process_next_queued()
            if outcome is None:
                break
            _, result = outcome
            counts['succeeded' if result.succeeded else 'failed'] += 1
        return counts
