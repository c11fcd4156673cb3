"""Command-line interface for paperenrich."""

import argparse
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .coordinator import EnrichmentCoordinator, build_sources
from .errors import EnrichmentError
from .identifiers import IdentifierMap, identifiers_from, identifiers_to_dict
from .retry import RetryPolicy
from .service import EnrichmentService
from .settings import EnrichmentSettingsStore
from .store import PublicationStore
from .utils import clean_arxiv_id, clean_doi


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Applied before any per-logger overrides from config
LIBRARY_LOG_LEVELS = {
    'urllib3': 'WARNING',
    'requests': 'WARNING',
    'arxiv': 'WARNING',
}

ENV_VAR_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def _log_level(name: Any, default: int) -> int:
    if isinstance(name, int):
        return name
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def setup_logging(config: Dict[str, Any] = None, verbose: bool = False) -> None:
    """Configure handlers and levels from the ``logging:`` config section.

    ``level`` sets the root level, and ``loggers`` maps logger names to
    their own levels on top of the library defaults. ``--verbose`` turns
    on DEBUG for paperenrich's own loggers only.

    Args:
        config: Logging configuration from config.yml
        verbose: If True, log paperenrich at DEBUG regardless of config
    """
    config = config or {}
    log_format = config.get('format', LOG_FORMAT)
    formatter = logging.Formatter(log_format)

    handlers = []
    # stderr keeps the JSON printed on stdout clean
    if config.get('console', True):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    log_file = config.get('file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=_log_level(config.get('level', 'INFO'), logging.INFO),
        format=log_format,
        handlers=handlers,
        force=True
    )

    levels = dict(LIBRARY_LOG_LEVELS)
    levels.update(config.get('loggers') or {})
    if verbose:
        levels['paperenrich'] = 'DEBUG'
    for name, level in levels.items():
        logging.getLogger(name).setLevel(_log_level(level, logging.WARNING))


def load_config(config_path: str = "config.yml") -> Dict[str, Any]:
    """Load the YAML config and resolve environment placeholders.

    ``${VAR}`` is replaced with the variable's value, and ``${VAR:-fallback}``
    uses ``fallback`` when the variable is unset or empty. Unset variables
    without a fallback are left as written; source construction treats
    those as missing credentials.

    Args:
        config_path: Path to the config file

    Returns:
        Configuration dictionary, or empty dict if the file is missing or unusable
    """
    config_file = Path(config_path)
    if not config_file.exists():
        return {}

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        print(f"Warning: Failed to load config file {config_path}: {e}", file=sys.stderr)
        return {}

    if not isinstance(config, dict):
        print(f"Warning: Ignoring config file {config_path}: expected a mapping at the top level",
              file=sys.stderr)
        return {}

    return _resolve_env(config)


def _resolve_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _resolve_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_env(item) for item in value]
    if not isinstance(value, str):
        return value

    def replace(match):
        name, fallback = match.groups()
        resolved = os.environ.get(name)
        if fallback is not None and not resolved:
            return fallback
        return resolved if resolved is not None else match.group(0)

    return ENV_VAR_PATTERN.sub(replace, value)


def apply_enrichment_config(settings: EnrichmentSettingsStore, config: Dict[str, Any]) -> None:
    """Seed settings from the ``enrichment:`` config section.

    Only applied when no settings file exists yet; after that the stored
    settings win.
    """
    if not config or settings.settings_file.exists():
        return
    if 'preferred_source' in config:
        settings.update_preferred_source(config['preferred_source'])
    if 'source_priority' in config:
        settings.update_source_priority(list(config['source_priority']))
    if 'auto_sync_enabled' in config:
        settings.update_auto_sync_enabled(bool(config['auto_sync_enabled']))
    if 'refresh_interval_days' in config:
        settings.update_refresh_interval_days(int(config['refresh_interval_days']))


def identifiers_from_args(args: argparse.Namespace) -> IdentifierMap:
    return identifiers_from(
        doi=clean_doi(args.doi) if args.doi else None,
        arxiv_id=clean_arxiv_id(args.arxiv) if args.arxiv else None,
        bibcode=args.bibcode,
        pmid=args.pmid,
        semantic_scholar_id=args.s2_id,
        openalex_id=args.openalex_id,
    )


def _add_identifier_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--doi', help='DOI of the paper')
    parser.add_argument('--arxiv', help='arXiv ID of the paper')
    parser.add_argument('--bibcode', help='ADS bibcode of the paper')
    parser.add_argument('--pmid', help='PubMed ID of the paper')
    parser.add_argument('--s2-id', help='Semantic Scholar paper ID')
    parser.add_argument('--openalex-id', help='OpenAlex work ID')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='paperenrich',
        description='Enrich bibliographic records with citation counts, references and open access data'
    )
    parser.add_argument('--config', '-c', default='config.yml', help='Path to config file (default: config.yml)')
    parser.add_argument('--data-dir', help='Directory for the publication store and settings (default: data)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    enrich = subparsers.add_parser('enrich', help='Enrich a single paper now and print the result as JSON')
    _add_identifier_arguments(enrich)
    enrich.add_argument('--retry', action='store_true', help='Retry with exponential backoff on failure')
    enrich.add_argument('--save', action='store_true', help='Also record the paper and result in the store')

    add = subparsers.add_parser('add', help='Add a paper to the publication store')
    _add_identifier_arguments(add)
    add.add_argument('--title', help='Paper title')

    sync = subparsers.add_parser('sync', help='Queue stale papers and enrich them')
    sync.add_argument('--limit', type=int, help='Maximum papers to queue (default: scheduler.items_per_cycle)')
    sync.add_argument('--all', action='store_true', help='Queue every stale paper, ignoring the limit')
    sync.add_argument('--show-failures', action='store_true', help='List failed papers after the run')

    subparsers.add_parser('stats', help='Show enrichment statistics for the store')

    settings = subparsers.add_parser('settings', help='Show or change enrichment settings')
    settings.add_argument('--priority', help='Comma-separated source priority, e.g. openalex,semanticscholar')
    settings.add_argument('--preferred', help='Preferred source id')
    settings.add_argument('--refresh-days', type=int, help='Refresh interval in days')
    settings.add_argument('--auto-sync', choices=['on', 'off'], help='Enable or disable background sync')
    settings.add_argument('--reset', action='store_true', help='Reset settings to defaults')

    return parser


def cmd_enrich(args, config, settings, store) -> int:
    identifiers = identifiers_from_args(args)
    service = EnrichmentService(build_sources(config.get('sources')), settings_provider=settings)

    publication_id = None
    existing = None
    if args.save and identifiers:
        publication_id = store.add_publication(identifiers)
        existing = store.get_enrichment(publication_id)

    try:
        if args.retry:
            result = service.enrich_with_retry(identifiers, existing, RetryPolicy.from_config(config.get('retry')))
        else:
            result = service.enrich_now(identifiers, existing)
    except EnrichmentError as e:
        print(f"Enrichment failed: {e}", file=sys.stderr)
        return 1

    if publication_id:
        store.save_result(publication_id, result)
        store.save()

    print(json.dumps({
        'identifiers': identifiers_to_dict(result.resolved_identifiers),
        'data': result.data.to_dict(),
    }, indent=2, ensure_ascii=False))
    return 0


def cmd_add(args, config, settings, store) -> int:
    identifiers = identifiers_from_args(args)
    if not identifiers:
        print("At least one identifier is required", file=sys.stderr)
        return 1
    publication_id = store.add_publication(identifiers, title=args.title)
    store.save()
    print(publication_id)
    return 0


def cmd_sync(args, config, settings, store) -> int:
    coordinator = EnrichmentCoordinator.from_config(config, store, settings)
    if args.all:
        queued = coordinator.queue_unenriched()
    else:
        if args.limit is not None:
            coordinator.scheduler.items_per_cycle = args.limit
        queued = coordinator.scheduler.trigger_immediate_check()

    print(f"Queued {queued} papers")
    counts = coordinator.drain()
    store.save()
    print(f"Enriched {counts['succeeded']} papers, {counts['failed']} failed")

    if args.show_failures:
        for failed in sorted(coordinator.tracker.requests_for_retry(), key=lambda f: f.publication_id):
            title = store.get_title(failed.publication_id) or ''
            print(f"  {failed.publication_id}  {title[:50]}  {failed.last_error}")
    return 0 if counts['failed'] == 0 else 2


def cmd_stats(args, config, settings, store) -> int:
    coordinator = EnrichmentCoordinator(store, settings, plugins=[])
    stats = coordinator.scheduler.statistics()
    print(f"Publications:      {len(store)}")
    print(f"Enriched:          {stats.total_enriched}")
    print(f"Stale:             {stats.stale_count}")
    print(f"Never enriched:    {stats.never_enriched_count}")
    return 0


def cmd_settings(args, config, settings, store) -> int:
    if args.reset:
        settings.reset_to_defaults()
    if args.priority:
        settings.update_source_priority([s.strip() for s in args.priority.split(',') if s.strip()])
    if args.preferred:
        settings.update_preferred_source(args.preferred)
    if args.refresh_days is not None:
        settings.update_refresh_interval_days(args.refresh_days)
    if args.auto_sync:
        settings.update_auto_sync_enabled(args.auto_sync == 'on')
    print(json.dumps(settings.settings.to_dict(), indent=2))
    return 0


COMMANDS = {
    'enrich': cmd_enrich,
    'add': cmd_add,
    'sync': cmd_sync,
    'stats': cmd_stats,
    'settings': cmd_settings,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.get('logging', {}), args.verbose)

    data_dir = Path(args.data_dir or (config.get('directories') or {}).get('data', 'data'))
    settings = EnrichmentSettingsStore(str(data_dir / 'enrichment_settings.json'))
    apply_enrichment_config(settings, config.get('enrichment') or {})
    store = PublicationStore(str(data_dir / 'publications.json'))

    if args.command in ('enrich', 'add') and not identifiers_from_args(args):
        parser.error('at least one of --doi, --arxiv, --bibcode, --pmid, --s2-id, --openalex-id is required')

    return COMMANDS[args.command](args, config, settings, store)


if __name__ == '__main__':
    sys.exit(main())
