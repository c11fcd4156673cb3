"""Concrete enrichment sources: OpenAlex, Semantic Scholar, NASA ADS and arXiv."""

import json
import logging
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.parse import quote

import arxiv
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import (
    AuthenticationRequiredError,
    NetworkError,
    NoIdentifierError,
    NotFoundError,
    ParseError,
    RateLimitedError,
)
from .identifiers import IdentifierMap, IdentifierType, merge_identifiers
from .models import (
    AuthorStats,
    EnrichmentCapability,
    EnrichmentData,
    EnrichmentResult,
    OpenAccessStatus,
    PaperStub,
)
from .plugin import EnrichmentPlugin, SourceMetadata
from .rate_limiter import RateLimit, RateLimiter
from .utils import clean_arxiv_id, clean_doi, short_openalex_id


DEFAULT_USER_AGENT = "paperenrich/1.0"

# Cap on reference/citation stubs kept per paper
MAX_STUBS = 100


class HTTPEnrichmentSource(EnrichmentPlugin):
    """Base for sources backed by a JSON HTTP API.

    Owns a ``requests`` session with transport-level retries for server
    errors. Throttling (429) is never retried here; it is reported as
    ``RateLimitedError`` so the service can stop the fallback chain.
    """

    DEFAULT_BASE_URL = ""
    DEFAULT_RATE_LIMIT: Optional[RateLimit] = None

    def __init__(self, base_url: Optional[str] = None, timeout: int = 15,
                 max_retries: int = 3, backoff_factor: float = 0.5,
                 user_agent: str = DEFAULT_USER_AGENT,
                 rate_limit: Optional[RateLimit] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip('/')
        self.timeout = timeout
        self._rate_limit = rate_limit if rate_limit is not None else self.DEFAULT_RATE_LIMIT
        super().__init__(rate_limiter)
        self.logger = logging.getLogger(__name__)

        if session is None:
            # Setup session with retry strategy
            session = requests.Session()
            retry_strategy = Retry(
                total=max_retries,
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["HEAD", "GET", "OPTIONS"],
                backoff_factor=backoff_factor,
                raise_on_status=False
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            session.headers.update({
                'User-Agent': user_agent,
                'Accept': 'application/json'
            })
        self.session = session

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """GET ``url`` through the rate limiter and return the decoded JSON object.

        Raises:
            EnrichmentError: mapped from the HTTP status or transport failure
        """
        self.rate_limiter.wait_if_needed()
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            self.logger.warning(f"{self.source_id}: timeout for {url}")
            raise NetworkError("Request timed out", original_error=e)
        except requests.exceptions.ConnectionError as e:
            self.logger.warning(f"{self.source_id}: connection error for {url}")
            raise NetworkError(f"Connection error: {e}", original_error=e)
        except requests.exceptions.RequestException as e:
            self.logger.error(f"{self.source_id}: request failed for {url}: {e}")
            raise NetworkError(str(e), original_error=e)

        status = response.status_code
        if status == 200:
            try:
                data = response.json()
            except (json.JSONDecodeError, ValueError) as e:
                self.logger.error(f"Invalid JSON response from {self.source_id}: {url}")
                raise ParseError("Invalid JSON", original_error=e)
            if not isinstance(data, dict):
                raise ParseError(f"Expected JSON object, got {type(data).__name__}")
            return data
        if status in (401, 403):
            self.logger.warning(f"{self.source_id}: authentication rejected (HTTP {status})")
            raise AuthenticationRequiredError(self.source_id)
        if status == 404:
            self.logger.info(f"{self.source_id}: not found: {url}")
            raise NotFoundError()
        if status == 429:
            error = RateLimitedError.from_header(response.headers.get('Retry-After'))
            self.logger.warning(f"Rate limited by {self.source_id}: {error}")
            raise error
        self.logger.warning(f"{self.source_id} API error {status} for {url}")
        raise NetworkError.from_status(status)

    def _parse(self, parser, payload: Dict[str, Any]) -> EnrichmentData:
        """Run a response parser, turning shape errors into ParseError."""
        try:
            return parser(payload)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise ParseError(f"Unexpected {self.source_id} response: {e}", original_error=e)


class OpenAlexSource(HTTPEnrichmentSource):
    """OpenAlex works API. Looks papers up by OpenAlex ID or DOI."""

    DEFAULT_BASE_URL = "https://api.openalex.org"
    DEFAULT_RATE_LIMIT = RateLimit(100000, 86400)

    def __init__(self, email: Optional[str] = None, **kwargs):
        self.email = email
        if email and 'user_agent' not in kwargs:
            kwargs['user_agent'] = f"{DEFAULT_USER_AGENT} (mailto:{email})"
        super().__init__(**kwargs)

    @property
    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            id="openalex",
            name="OpenAlex",
            description="Open catalog of scholarly works, authors and venues",
            rate_limit=self._rate_limit,
        )

    @property
    def capabilities(self) -> EnrichmentCapability:
        return (EnrichmentCapability.CITATION_COUNT | EnrichmentCapability.REFERENCES
                | EnrichmentCapability.ABSTRACT | EnrichmentCapability.PDF_URL
                | EnrichmentCapability.OPEN_ACCESS | EnrichmentCapability.VENUE)

    @property
    def supported_identifiers(self) -> FrozenSet[IdentifierType]:
        return frozenset({IdentifierType.OPENALEX, IdentifierType.DOI})

    def _params(self, **extra) -> Dict[str, Any]:
        params = dict(extra)
        if self.email:
            params['mailto'] = self.email
        return params

    def _work_key(self, identifiers: IdentifierMap) -> str:
        if identifiers.get(IdentifierType.OPENALEX):
            return short_openalex_id(identifiers[IdentifierType.OPENALEX])
        doi = clean_doi(identifiers.get(IdentifierType.DOI))
        if doi:
            # OpenAlex accepts the full DOI URL as a work key
            return f"https://doi.org/{doi}"
        raise NoIdentifierError()

    def _discovered_identifiers(self, work: Dict[str, Any]) -> IdentifierMap:
        found: IdentifierMap = {}
        if work.get('id'):
            found[IdentifierType.OPENALEX] = short_openalex_id(work['id'])
        if work.get('doi'):
            found[IdentifierType.DOI] = clean_doi(work['doi'])
        return found

    def _resolve(self, identifiers: IdentifierMap) -> IdentifierMap:
        if identifiers.get(IdentifierType.OPENALEX) or not identifiers.get(IdentifierType.DOI):
            return identifiers
        work = self._get_json(
            f"{self.base_url}/works/{self._work_key(identifiers)}",
            params=self._params(select="id,doi"),
        )
        return merge_identifiers(identifiers, self._discovered_identifiers(work))

    def enrich(self, identifiers: IdentifierMap,
               existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        url = f"{self.base_url}/works/{self._work_key(identifiers)}"
        work = self._get_json(url, params=self._params())
        data = self._parse(self._parse_work, work)
        self.logger.debug(f"Successfully enriched via OpenAlex: {url}")
        return EnrichmentResult(
            data=data.merged_with(existing_data),
            resolved_identifiers=merge_identifiers(identifiers, self._discovered_identifiers(work)),
        )

    @staticmethod
    def reconstruct_abstract(inverted_index: Optional[Dict[str, List[int]]]) -> Optional[str]:
        """Rebuild abstract text from OpenAlex's word -> positions index."""
        if not inverted_index:
            return None
        words = [(pos, word) for word, positions in inverted_index.items() for pos in positions]
        words.sort(key=lambda x: x[0])
        return ' '.join(word for _, word in words)

    @staticmethod
    def _open_access_status(open_access: Dict[str, Any]) -> Optional[OpenAccessStatus]:
        if open_access.get('is_oa') is None:
            return None
        if not open_access['is_oa']:
            return OpenAccessStatus.CLOSED
        return OpenAccessStatus.from_value(open_access.get('oa_status'))

    def _parse_work(self, work: Dict[str, Any]) -> EnrichmentData:
        open_access = work.get('open_access') or {}
        primary_location = work.get('primary_location') or {}
        venue_source = primary_location.get('source') or {}
        best_oa = work.get('best_oa_location') or {}

        pdf_urls: List[str] = []
        for candidate in (open_access.get('oa_url'), best_oa.get('pdf_url'), primary_location.get('pdf_url')):
            if candidate and candidate not in pdf_urls:
                pdf_urls.append(candidate)

        referenced = work.get('referenced_works') or []
        references = [PaperStub(id=short_openalex_id(ref)) for ref in referenced[:MAX_STUBS]]

        return EnrichmentData(
            source=self.source_id,
            citation_count=work.get('cited_by_count') or 0,
            reference_count=work.get('referenced_works_count', len(referenced)),
            abstract=self.reconstruct_abstract(work.get('abstract_inverted_index')),
            pdf_urls=pdf_urls or None,
            open_access_status=self._open_access_status(open_access),
            venue=venue_source.get('display_name'),
            references=references or None,
        )


class SemanticScholarSource(HTTPEnrichmentSource):
    """Semantic Scholar Graph API. Supplies the citation graph and author statistics."""

    DEFAULT_BASE_URL = "https://api.semanticscholar.org/graph/v1"
    DEFAULT_RATE_LIMIT = RateLimit(100, 1.0)

    STUB_FIELDS = "paperId,title,year,venue,authors,externalIds,citationCount,isOpenAccess"
    FIELDS = ",".join(
        ["paperId", "externalIds", "citationCount", "referenceCount", "abstract", "venue",
         "openAccessPdf", "isOpenAccess",
         "authors.authorId", "authors.name", "authors.hIndex", "authors.citationCount",
         "authors.paperCount", "authors.affiliations"]
        + [f"references.{f}" for f in STUB_FIELDS.split(",")]
        + [f"citations.{f}" for f in STUB_FIELDS.split(",")]
    )

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        self.api_key = api_key
        super().__init__(**kwargs)
        if api_key:
            self.session.headers['x-api-key'] = api_key

    @property
    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            id="semanticscholar",
            name="Semantic Scholar",
            description="AI-powered research tool with citation graph and author metrics",
            rate_limit=self._rate_limit,
        )

    @property
    def capabilities(self) -> EnrichmentCapability:
        return (EnrichmentCapability.CITATION_COUNT | EnrichmentCapability.REFERENCES
                | EnrichmentCapability.CITATIONS | EnrichmentCapability.ABSTRACT
                | EnrichmentCapability.PDF_URL | EnrichmentCapability.AUTHOR_STATS
                | EnrichmentCapability.VENUE)

    @property
    def supported_identifiers(self) -> FrozenSet[IdentifierType]:
        return frozenset({
            IdentifierType.SEMANTIC_SCHOLAR,
            IdentifierType.DOI,
            IdentifierType.ARXIV,
            IdentifierType.PMID,
        })

    @staticmethod
    def paper_id(identifiers: IdentifierMap) -> str:
        """Semantic Scholar paper key, in order of preference."""
        if identifiers.get(IdentifierType.SEMANTIC_SCHOLAR):
            return identifiers[IdentifierType.SEMANTIC_SCHOLAR]
        if identifiers.get(IdentifierType.DOI):
            return f"DOI:{clean_doi(identifiers[IdentifierType.DOI])}"
        if identifiers.get(IdentifierType.ARXIV):
            return f"ARXIV:{clean_arxiv_id(identifiers[IdentifierType.ARXIV], keep_version=False)}"
        if identifiers.get(IdentifierType.PMID):
            return f"PMID:{identifiers[IdentifierType.PMID]}"
        raise NoIdentifierError()

    def _paper_url(self, identifiers: IdentifierMap) -> str:
        return f"{self.base_url}/paper/{quote(self.paper_id(identifiers), safe=':/')}"

    @staticmethod
    def _discovered_identifiers(paper: Dict[str, Any]) -> IdentifierMap:
        found: IdentifierMap = {}
        if paper.get('paperId'):
            found[IdentifierType.SEMANTIC_SCHOLAR] = paper['paperId']
        external = paper.get('externalIds') or {}
        if external.get('DOI'):
            found[IdentifierType.DOI] = external['DOI']
        if external.get('ArXiv'):
            found[IdentifierType.ARXIV] = external['ArXiv']
        if external.get('PubMed'):
            found[IdentifierType.PMID] = str(external['PubMed'])
        return found

    def _resolve(self, identifiers: IdentifierMap) -> IdentifierMap:
        if identifiers.get(IdentifierType.SEMANTIC_SCHOLAR):
            return identifiers
        paper = self._get_json(self._paper_url(identifiers), params={'fields': 'paperId,externalIds'})
        return merge_identifiers(identifiers, self._discovered_identifiers(paper))

    def enrich(self, identifiers: IdentifierMap,
               existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        paper = self._get_json(self._paper_url(identifiers), params={'fields': self.FIELDS})
        data = self._parse(self._parse_paper, paper)
        return EnrichmentResult(
            data=data.merged_with(existing_data),
            resolved_identifiers=merge_identifiers(identifiers, self._discovered_identifiers(paper)),
        )

    @staticmethod
    def _parse_stub(item: Dict[str, Any]) -> Optional[PaperStub]:
        if not item or not item.get('paperId'):
            return None
        external = item.get('externalIds') or {}
        return PaperStub(
            id=item['paperId'],
            title=item.get('title') or "",
            authors=[a['name'] for a in item.get('authors') or [] if a.get('name')],
            year=item.get('year'),
            venue=item.get('venue') or None,
            doi=external.get('DOI'),
            arxiv_id=external.get('ArXiv'),
            citation_count=item.get('citationCount'),
            is_open_access=item.get('isOpenAccess'),
        )

    def _parse_stubs(self, items: Optional[List[Dict[str, Any]]]) -> Optional[List[PaperStub]]:
        if items is None:
            return None
        stubs = [stub for stub in (self._parse_stub(i) for i in items[:MAX_STUBS]) if stub]
        return stubs

    @staticmethod
    def _parse_author(author: Dict[str, Any]) -> Optional[AuthorStats]:
        if not author.get('authorId'):
            return None
        return AuthorStats(
            author_id=author['authorId'],
            name=author.get('name') or "",
            h_index=author.get('hIndex'),
            citation_count=author.get('citationCount'),
            paper_count=author.get('paperCount'),
            affiliations=author.get('affiliations') or None,
        )

    def _parse_paper(self, paper: Dict[str, Any]) -> EnrichmentData:
        open_access_pdf = paper.get('openAccessPdf') or {}
        authors = [a for a in (self._parse_author(x) for x in paper.get('authors') or []) if a]
        return EnrichmentData(
            source=self.source_id,
            citation_count=paper.get('citationCount') or 0,
            reference_count=paper.get('referenceCount'),
            abstract=paper.get('abstract'),
            pdf_urls=[open_access_pdf['url']] if open_access_pdf.get('url') else None,
            venue=paper.get('venue') or None,
            references=self._parse_stubs(paper.get('references')),
            citations=self._parse_stubs(paper.get('citations')),
            author_stats=authors or None,
        )


class ADSSource(HTTPEnrichmentSource):
    """NASA Astrophysics Data System search API. Requires an API token."""

    DEFAULT_BASE_URL = "https://api.adsabs.harvard.edu/v1"
    DEFAULT_RATE_LIMIT = RateLimit(5000, 86400)
    FIELDS = "bibcode,doi,citation_count,abstract,reference,pub"

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        self.api_key = api_key
        super().__init__(**kwargs)

    @property
    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            id="ads",
            name="NASA ADS",
            description="Astrophysics Data System bibliographic database",
            rate_limit=self._rate_limit,
        )

    @property
    def capabilities(self) -> EnrichmentCapability:
        return (EnrichmentCapability.CITATION_COUNT | EnrichmentCapability.REFERENCES
                | EnrichmentCapability.ABSTRACT | EnrichmentCapability.VENUE)

    @property
    def supported_identifiers(self) -> FrozenSet[IdentifierType]:
        return frozenset({IdentifierType.BIBCODE, IdentifierType.DOI, IdentifierType.ARXIV})

    @staticmethod
    def build_query(identifiers: IdentifierMap) -> str:
        if identifiers.get(IdentifierType.BIBCODE):
            return f'bibcode:"{identifiers[IdentifierType.BIBCODE]}"'
        if identifiers.get(IdentifierType.DOI):
            return f'doi:"{clean_doi(identifiers[IdentifierType.DOI])}"'
        if identifiers.get(IdentifierType.ARXIV):
            return f'arXiv:{clean_arxiv_id(identifiers[IdentifierType.ARXIV], keep_version=False)}'
        raise NoIdentifierError()

    def _search(self, identifiers: IdentifierMap, fields: str) -> Dict[str, Any]:
        if not self.api_key:
            raise AuthenticationRequiredError(self.source_id)
        payload = self._get_json(
            f"{self.base_url}/search/query",
            params={'q': self.build_query(identifiers), 'fl': fields, 'rows': 1},
            headers={'Authorization': f"Bearer {self.api_key}"},
        )
        response = payload.get('response')
        if not isinstance(response, dict):
            raise ParseError("Missing 'response' object")
        docs = response.get('docs') or []
        if not response.get('numFound') or not docs:
            raise NotFoundError()
        return docs[0]

    @staticmethod
    def _discovered_identifiers(doc: Dict[str, Any]) -> IdentifierMap:
        found: IdentifierMap = {}
        if doc.get('bibcode'):
            found[IdentifierType.BIBCODE] = doc['bibcode']
        dois = doc.get('doi') or []
        if dois:
            found[IdentifierType.DOI] = dois[0]
        return found

    def _resolve(self, identifiers: IdentifierMap) -> IdentifierMap:
        if identifiers.get(IdentifierType.BIBCODE):
            return identifiers
        doc = self._search(identifiers, "bibcode,doi")
        return merge_identifiers(identifiers, self._discovered_identifiers(doc))

    def enrich(self, identifiers: IdentifierMap,
               existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        doc = self._search(identifiers, self.FIELDS)
        data = self._parse(self._parse_doc, doc)
        return EnrichmentResult(
            data=data.merged_with(existing_data),
            resolved_identifiers=merge_identifiers(identifiers, self._discovered_identifiers(doc)),
        )

    def _parse_doc(self, doc: Dict[str, Any]) -> EnrichmentData:
        references = [PaperStub(id=bibcode) for bibcode in doc.get('reference') or []]
        return EnrichmentData(
            source=self.source_id,
            citation_count=doc.get('citation_count') or 0,
            reference_count=len(references) if 'reference' in doc else None,
            abstract=doc.get('abstract'),
            venue=doc.get('pub'),
            references=references[:MAX_STUBS] or None,
        )


class ArxivSource(EnrichmentPlugin):
    """arXiv metadata via the ``arxiv`` client library."""

    DEFAULT_RATE_LIMIT = RateLimit(1, 3.0)  # arXiv asks for 3 seconds between requests

    def __init__(self, rate_limit: Optional[RateLimit] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 client: Optional[arxiv.Client] = None):
        self._rate_limit = rate_limit if rate_limit is not None else self.DEFAULT_RATE_LIMIT
        super().__init__(rate_limiter)
        if client is None:
            # One HTTP request per _fetch; pacing and retries belong to the rate limiter and RetryPolicy
            client = arxiv.Client(page_size=1, delay_seconds=0.0, num_retries=0)
        self.client = client

    @property
    def metadata(self) -> SourceMetadata:
        return SourceMetadata(
            id="arxiv",
            name="arXiv",
            description="Open-access preprint repository",
            rate_limit=self._rate_limit,
        )

    @property
    def capabilities(self) -> EnrichmentCapability:
        return (EnrichmentCapability.ABSTRACT | EnrichmentCapability.PDF_URL
                | EnrichmentCapability.OPEN_ACCESS | EnrichmentCapability.VENUE)

    @property
    def supported_identifiers(self) -> FrozenSet[IdentifierType]:
        return frozenset({IdentifierType.ARXIV})

    def _fetch(self, identifiers: IdentifierMap) -> arxiv.Result:
        arxiv_id = clean_arxiv_id(identifiers.get(IdentifierType.ARXIV))
        if not arxiv_id:
            raise NoIdentifierError()

        self.rate_limiter.wait_if_needed()
        try:
            results = list(self.client.results(arxiv.Search(id_list=[arxiv_id], max_results=1)))
        except arxiv.HTTPError as e:
            if e.status == 429:
                raise RateLimitedError()
            raise NetworkError.from_status(e.status)
        except arxiv.ArxivError as e:
            raise NetworkError(str(e), original_error=e)
        except requests.exceptions.RequestException as e:
            raise NetworkError(str(e), original_error=e)

        if not results:
            self.logger.info(f"No arXiv entry for {arxiv_id}")
            raise NotFoundError()
        return results[0]

    @staticmethod
    def _discovered_identifiers(paper: arxiv.Result) -> IdentifierMap:
        found: IdentifierMap = {IdentifierType.ARXIV: paper.get_short_id()}
        if paper.doi:
            found[IdentifierType.DOI] = paper.doi
        return found

    def _resolve(self, identifiers: IdentifierMap) -> IdentifierMap:
        if identifiers.get(IdentifierType.DOI):
            return identifiers
        return merge_identifiers(identifiers, self._discovered_identifiers(self._fetch(identifiers)))

    def enrich(self, identifiers: IdentifierMap,
               existing_data: Optional[EnrichmentData] = None) -> EnrichmentResult:
        paper = self._fetch(identifiers)
        data = EnrichmentData(
            source=self.source_id,
            abstract=paper.summary.strip() if paper.summary else None,
            pdf_urls=[paper.pdf_url] if paper.pdf_url else None,
            open_access_status=OpenAccessStatus.GREEN,
            venue=paper.journal_ref or None,
        )
        return EnrichmentResult(
            data=data.merged_with(existing_data),
            resolved_identifiers=merge_identifiers(identifiers, self._discovered_identifiers(paper)),
        )


SOURCE_CLASSES = {
    "openalex": OpenAlexSource,
    "semanticscholar": SemanticScholarSource,
    "ads": ADSSource,
    "arxiv": ArxivSource,
}
