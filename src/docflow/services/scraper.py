"""HTTP scraper that turns a data source's pages into processed documents."""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from docflow.settings import get_settings
from docflow.store.document_store import DocumentStore

LOGGER = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_SKIPPED_EXTENSIONS = (".pdf", ".doc", ".docx", ".zip", ".jpg", ".jpeg", ".png", ".gif", ".mp3", ".mp4")

# (title/url fragment, document type); first match wins
_TYPE_HINTS = (
    ("projekt uchwały", "resolution_project"),
    ("uchwał", "resolution"),
    ("protokół", "protocol"),
    ("porządek obrad", "session_order"),
    ("interpelacj", "interpellation"),
    ("zarządzeni", "order"),
    ("budżet", "budget_act"),
    ("sesj", "session"),
    ("ogłoszeni", "announcement"),
    ("obwieszczeni", "announcement"),
)


@dataclass(slots=True)
class ScrapedPage:
    url: str
    title: str
    text: str
    links: List[str]


@dataclass(slots=True)
class ScrapeResult:
    source_id: str
    pages_fetched: int = 0
    documents_created: int = 0
    documents_skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _normalize_ws(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def classify_document_type(title: str, url: str = "") -> str:
    haystack = f"{title} {url}".lower()
    for hint, document_type in _TYPE_HINTS:
        if hint in haystack:
            return document_type
    return "article"


def parse_page(url: str, html: str) -> ScrapedPage:
    """Extract the title, readable text and absolute links of an HTML page."""

    soup = BeautifulSoup(html, "html.parser")
    title = _normalize_ws(soup.title.string) if soup.title and soup.title.string else url
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for selector in ("header", "footer", "nav", "aside"):
        for tag in soup.find_all(selector):
            tag.decompose()
    container = soup.find("main") or soup.find("article") or soup.body or soup
    lines = [_normalize_ws(line) for line in container.get_text(separator="\n").splitlines()]
    text = "\n".join(line for line in lines if line)

    links: List[str] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor.get("href", "").strip()
        if not href or href.startswith(("mailto:", "javascript:", "#")):
            continue
        absolute = urlparse(urljoin(url, href))._replace(fragment="").geturl()
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return ScrapedPage(url=url, title=title, text=text, links=links)


class SourceScraper:
    """Fetch a source's start page plus same-site links and store new pages."""

    def __init__(
        self,
        *,
        documents: DocumentStore | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._documents = documents or DocumentStore()
        self._settings = get_settings().scraping
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            headers={"User-Agent": self._settings.user_agent},
            timeout=self._settings.request_timeout_seconds,
            follow_redirects=True,
            transport=self._transport,
        )

    def _fetch(self, client: httpx.Client, url: str) -> Optional[ScrapedPage]:
        try:
            response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Fetching %s failed: %s", url, exc)
            return None
        if "html" not in response.headers.get("content-type", "text/html"):
            return None
        return parse_page(str(response.url), response.text)

    def scrape(self, source_id: str, user_id: str, config: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        """Scrape ``source_id``; raises ``LookupError`` for unknown sources."""

        source = self._documents.get_source(source_id)
        if source is None:
            raise LookupError(f"Data source {source_id} not found")
        config = dict(config or {})
        max_pages = int(config.get("max_pages") or self._settings.max_pages)
        parallel = max(1, int(config.get("max_pages_parallel") or self._settings.max_pages_parallel))
        result = ScrapeResult(source_id=source_id)

        with self._client() as client:
            start = self._fetch(client, source["url"])
            if start is None:
                raise RuntimeError(f"Could not fetch start page {source['url']}")
            pages = [start]
            host = urlparse(start.url).netloc
            candidates = [
                link
                for link in start.links
                if urlparse(link).netloc == host
                and link != start.url
                and not urlparse(link).path.lower().endswith(_SKIPPED_EXTENSIONS)
            ][: max(0, max_pages - 1)]
            with ThreadPoolExecutor(max_workers=parallel, thread_name_prefix="scrape-page") as executor:
                for page in executor.map(lambda link: self._fetch(client, link), candidates):
                    if page is None:
                        result.errors += 1
                    else:
                        pages.append(page)

        result.pages_fetched = len(pages)
        for page in pages:
            if not page.text:
                result.documents_skipped += 1
                continue
            if self._documents.find_by_source_url(user_id=user_id, source_url=page.url):
                result.documents_skipped += 1
                continue
            self._documents.insert_document(
                user_id=user_id,
                title=page.title,
                content=page.text,
                document_type=classify_document_type(page.title, page.url),
                source_url=page.url,
                metadata={"source_id": source_id, "source_type": source.get("source_type")},
            )
            result.documents_created += 1

        self._documents.mark_scraped(source_id)
        LOGGER.info(
            "Scraped source %s: pages=%s created=%s skipped=%s errors=%s",
            source_id,
            result.pages_fetched,
            result.documents_created,
            result.documents_skipped,
            result.errors,
        )
        return result.to_dict()


__all__ = ["ScrapeResult", "ScrapedPage", "SourceScraper", "classify_document_type", "parse_page"]
