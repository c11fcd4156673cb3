"""Enrichment settings and the providers that store them."""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional


DEFAULT_PREFERRED_SOURCE = "semanticscholar"
DEFAULT_SOURCE_PRIORITY = ["semanticscholar", "openalex", "ads"]
DEFAULT_REFRESH_INTERVAL_DAYS = 7


@dataclass
class EnrichmentSettings:
    """User-facing enrichment preferences."""
    preferred_source: str = DEFAULT_PREFERRED_SOURCE
    source_priority: List[str] = field(default_factory=lambda: list(DEFAULT_SOURCE_PRIORITY))
    auto_sync_enabled: bool = True
    refresh_interval_days: int = DEFAULT_REFRESH_INTERVAL_DAYS

    def __post_init__(self):
        self.refresh_interval_days = max(1, int(self.refresh_interval_days))
        self.source_priority = list(self.source_priority)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrichmentSettings":
        """Build settings from a dict, using defaults for missing keys."""
        defaults = cls()
        priority = data.get('source_priority', defaults.source_priority)
        if not isinstance(priority, list) or not all(isinstance(s, str) for s in priority):
            raise ValueError(f"Invalid source_priority: {priority!r}")
        return cls(
            preferred_source=str(data.get('preferred_source', defaults.preferred_source)),
            source_priority=priority,
            auto_sync_enabled=bool(data.get('auto_sync_enabled', defaults.auto_sync_enabled)),
            refresh_interval_days=int(data.get('refresh_interval_days', defaults.refresh_interval_days)),
        )


class SettingsProvider(ABC):
    """Read/update contract the service and scheduler depend on.

    Subclasses supply ``_load`` and ``_persist``; every read returns a
    consistent snapshot and every update is applied atomically.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._settings = self._load()

    @abstractmethod
    def _load(self) -> EnrichmentSettings:
        """Initial settings."""

    @abstractmethod
    def _persist(self, settings: EnrichmentSettings) -> None:
        """Write settings to the backing store."""

    @property
    def settings(self) -> EnrichmentSettings:
        with self._lock:
            return replace(self._settings, source_priority=list(self._settings.source_priority))

    @property
    def preferred_source(self) -> str:
        return self.settings.preferred_source

    @property
    def source_priority(self) -> List[str]:
        return self.settings.source_priority

    @property
    def auto_sync_enabled(self) -> bool:
        return self.settings.auto_sync_enabled

    @property
    def refresh_interval_days(self) -> int:
        return self.settings.refresh_interval_days

    def _update(self, **changes) -> EnrichmentSettings:
        with self._lock:
            self._settings = EnrichmentSettings(**{**asdict(self._settings), **changes})
            self._persist(self._settings)
            return self._settings

    def update_preferred_source(self, source_id: str) -> None:
        self._update(preferred_source=source_id)
        self.logger.info(f"Preferred enrichment source set to {source_id}")

    def update_source_priority(self, priority: List[str]) -> None:
        # Drop duplicates, keeping the first occurrence
        deduped = list(dict.fromkeys(priority))
        self._update(source_priority=deduped)
        self.logger.info(f"Enrichment source priority set to {deduped}")

    def update_auto_sync_enabled(self, enabled: bool) -> None:
        self._update(auto_sync_enabled=bool(enabled))
        self.logger.info(f"Auto-sync {'enabled' if enabled else 'disabled'}")

    def update_refresh_interval_days(self, days: int) -> None:
        updated = self._update(refresh_interval_days=days)
        self.logger.info(f"Refresh interval set to {updated.refresh_interval_days} days")

    def update_settings(self, settings: EnrichmentSettings) -> None:
        self._update(**asdict(settings))

    def move_source(self, source_id: str, index: int) -> None:
        """Move ``source_id`` to position ``index`` in the priority list.

        The index is clamped to the list bounds. Unknown sources are ignored.
        """
        with self._lock:
            priority = list(self._settings.source_priority)
            if source_id not in priority:
                return
            priority.remove(source_id)
            index = max(0, min(index, len(priority)))
            priority.insert(index, source_id)
            self._settings = replace(self._settings, source_priority=priority)
            self._persist(self._settings)

    def reset_to_defaults(self) -> None:
        with self._lock:
            self._settings = EnrichmentSettings()
            self._persist(self._settings)
        self.logger.info("Enrichment settings reset to defaults")

    def is_source_enabled(self, source_id: str) -> bool:
        return source_id in self.source_priority

    def priority_rank(self, source_id: str) -> Optional[int]:
        """0-based position in the priority list, or None if absent."""
        priority = self.source_priority
        return priority.index(source_id) if source_id in priority else None

    @property
    def top_priority_source(self) -> Optional[str]:
        priority = self.source_priority
        return priority[0] if priority else None


class DefaultSettingsProvider(SettingsProvider):
    """In-memory settings, optionally seeded with initial values."""

    def __init__(self, settings: Optional[EnrichmentSettings] = None):
        self._initial = settings
        super().__init__()

    def _load(self) -> EnrichmentSettings:
        if self._initial is None:
            return EnrichmentSettings()
        return replace(self._initial, source_priority=list(self._initial.source_priority))

    def _persist(self, settings: EnrichmentSettings) -> None:
        pass


class EnrichmentSettingsStore(SettingsProvider):
    """Settings persisted as a JSON blob on disk.

    A missing or corrupt file yields the defaults.
    """

    def __init__(self, settings_file: str = "data/enrichment_settings.json"):
        self.settings_file = Path(settings_file)
        super().__init__()

    def _load(self) -> EnrichmentSettings:
        if not self.settings_file.exists():
            return EnrichmentSettings()
        try:
            with open(self.settings_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("settings file does not contain an object")
            return EnrichmentSettings.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            self.logger.warning(f"Failed to load enrichment settings, using defaults: {e}")
            return EnrichmentSettings()

    def _persist(self, settings: EnrichmentSettings) -> None:
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.settings_file, 'w', encoding='utf-8') as f:
            json.dump(settings.to_dict(), f, indent=2)
