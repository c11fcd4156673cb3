"""Shared helpers for identifier normalization and timestamps."""

import re
from datetime import datetime, timezone
from typing import Optional


DOI_PREFIXES = (
    'https://doi.org/',
    'http://doi.org/',
    'https://dx.doi.org/',
    'http://dx.doi.org/',
    'doi:',
)

ARXIV_PREFIXES = (
    'https://arxiv.org/abs/',
    'http://arxiv.org/abs/',
    'https://arxiv.org/pdf/',
    'arxiv:',
)

OPENALEX_PREFIX = 'https://openalex.org/'

# Trailing version suffix, e.g. the v2 in 2301.01234v2
ARXIV_VERSION_PATTERN = re.compile(r'v\d+$')


def clean_doi(doi: Optional[str]) -> str:
    """Clean and normalize a DOI.

    Strips resolver URL prefixes and the ``doi:`` scheme.

    Args:
        doi: Raw DOI string, possibly a URL

    Returns:
        Bare DOI such as ``10.1234/abc``, or empty string
    """
    if not doi:
        return ""
    clean = doi.strip()
    lowered = clean.lower()
    for prefix in DOI_PREFIXES:
        if lowered.startswith(prefix):
            clean = clean[len(prefix):]
            break
    return clean.strip()


def is_valid_doi(doi: str) -> bool:
    """Basic DOI format validation."""
    if not doi or len(doi) < 7:
        return False
    # Basic pattern: 10.xxxx/yyyy
    return doi.startswith('10.') and '/' in doi[3:]


def clean_arxiv_id(arxiv_id: Optional[str], keep_version: bool = True) -> str:
    """Normalize an arXiv identifier.

    Args:
        arxiv_id: Raw arXiv ID or abs/pdf URL
        keep_version: If False, drop a trailing ``vN`` version suffix

    Returns:
        Bare arXiv ID, or empty string
    """
    if not arxiv_id:
        return ""
    clean = arxiv_id.strip()
    lowered = clean.lower()
    for prefix in ARXIV_PREFIXES:
        if lowered.startswith(prefix):
            clean = clean[len(prefix):]
            break
    if clean.endswith('.pdf'):
        clean = clean[:-4]
    if not keep_version:
        clean = ARXIV_VERSION_PATTERN.sub('', clean)
    return clean.strip()


def short_openalex_id(openalex_id: Optional[str]) -> str:
    """Strip the ``https://openalex.org/`` prefix from an OpenAlex work ID."""
    if not openalex_id:
        return ""
    return openalex_id.replace(OPENALEX_PREFIX, '').strip()


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given.

    Returns None for empty or malformed values.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
