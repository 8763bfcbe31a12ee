"""
Fetchers return the observable state of a single job posting.

The scheduler only depends on the ``Fetcher`` protocol: ``fetch(url)``
returns a ``FetchedPage`` (raw field values, raw artifact bytes, content
type), returns ``NotFound`` when the posting is gone, or raises
``FetchError`` on a transient failure.

``HttpFetcher`` is the default implementation. It retrieves the page with
``requests`` and reads the schema.org ``JobPosting`` JSON-LD block most
job boards embed, falling back to the page title and body text. For
local testing it also accepts ``file://`` URLs pointing at recorded HTML
or JSON files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from .errors import FetchError
from .models import FetchedPage, FetchOutcome, NotFound

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = {404, 410}

# Phrases boards show in place of a removed posting (often with HTTP 200).
REMOVED_MARKERS = (
    "no longer accepting applications",
    "this job is no longer available",
    "this position has been filled",
    "this job has expired",
    "job posting has been removed",
)


class Fetcher(Protocol):
    def fetch(self, url: str) -> FetchOutcome:
        ...


def _iter_json_ld(soup: BeautifulSoup) -> Iterator[Dict[str, Any]]:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or script.get_text() or "")
        except json.JSONDecodeError:
            continue
        stack: List[Any] = [data]
        while stack:
            item = stack.pop(0)
            if isinstance(item, list):
                stack.extend(item)
            elif isinstance(item, dict):
                if "@graph" in item:
                    stack.extend(item["@graph"] if isinstance(item["@graph"], list) else [item["@graph"]])
                yield item


def _is_job_posting(item: Dict[str, Any]) -> bool:
    kind = item.get("@type")
    if isinstance(kind, list):
        return "JobPosting" in kind
    return kind == "JobPosting"


def _html_to_text(markup: Optional[str]) -> Optional[str]:
    if not markup:
        return None
    return BeautifulSoup(markup, "html.parser").get_text(" ", strip=True)


def _location_from_json_ld(value: Any) -> Optional[str]:
    if isinstance(value, list):
        parts = [_location_from_json_ld(v) for v in value]
        return " / ".join(p for p in parts if p) or None
    if not isinstance(value, dict):
        return str(value) if value else None
    address = value.get("address", value)
    if isinstance(address, str):
        return address
    parts = [address.get(key) for key in ("addressLocality", "addressRegion", "addressCountry")]
    parts = [p.get("name") if isinstance(p, dict) else p for p in parts]
    return ", ".join(str(p) for p in parts if p) or None


def parse_json_posting(item: Dict[str, Any]) -> Dict[str, Any]:
    """Map a schema.org ``JobPosting`` object onto the tracked field names."""
    fields: Dict[str, Any] = {"title": item.get("title")}

    org = item.get("hiringOrganization")
    fields["company"] = org.get("name") if isinstance(org, dict) else org

    location = _location_from_json_ld(item.get("jobLocation"))
    if not location and str(item.get("jobLocationType", "")).upper() == "TELECOMMUTE":
        location = "Remote"
    fields["location"] = location

    salary = item.get("baseSalary")
    if isinstance(salary, dict):
        fields["salary_currency"] = salary.get("currency")
        value = salary.get("value")
        if isinstance(value, dict):
            fields["salary_min"] = value.get("minValue", value.get("value"))
            fields["salary_max"] = value.get("maxValue", value.get("value"))
        elif value is not None:
            fields["salary_min"] = fields["salary_max"] = value

    employment = item.get("employmentType")
    if isinstance(employment, list):
        employment = employment[0] if employment else None
    fields["employment_type"] = employment

    department = item.get("occupationalCategory") or item.get("industry")
    fields["department"] = department if isinstance(department, str) else None
    fields["description"] = _html_to_text(item.get("description"))
    return fields


def extract_posting_fields(html: str) -> Dict[str, Any]:
    """Extract tracked fields from a job posting page."""
    soup = BeautifulSoup(html, "html.parser")
    for item in _iter_json_ld(soup):
        if _is_job_posting(item):
            return parse_json_posting(item)

    # No structured data: fall back to the visible page.
    heading = soup.find("h1")
    title = heading.get_text(" ", strip=True) if heading else None
    if not title and soup.title:
        title = soup.title.get_text(" ", strip=True)
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    body = soup.body or soup
    return {"title": title, "description": body.get_text(" ", strip=True)}


def has_removed_marker(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in REMOVED_MARKERS)


class HttpFetcher:
    """Fetch job postings over HTTP(S) with ``requests``."""

    def __init__(
        self,
        timeout: float = 20,
        user_agent: str = "Mozilla/5.0 (compatible; job-monitor/1.0)",
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()

    def fetch(self, url: str) -> FetchOutcome:
        if url.startswith("file://"):
            return self._fetch_file(url)
        try:
            resp = self.session.get(url, headers={"User-Agent": self.user_agent}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchError(url, f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code in GONE_STATUS_CODES:
            logger.info("Posting gone at %s (HTTP %s)", url, resp.status_code)
            return NotFound(url=url, reason=f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise FetchError(url, f"HTTP {resp.status_code}", status_code=resp.status_code)

        content_type = (resp.headers.get("Content-Type") or "text/html").split(";")[0].strip().lower()
        return self._page_from_body(url, resp.content, content_type)

    def _fetch_file(self, url: str) -> FetchOutcome:
        path = Path(urlparse(url).path)
        if not path.exists():
            return NotFound(url=url, reason="file missing")
        content_type = "application/json" if path.suffix == ".json" else "text/html"
        try:
            body = path.read_bytes()
        except OSError as exc:
            raise FetchError(url, f"{type(exc).__name__}: {exc}") from exc
        return self._page_from_body(url, body, content_type)

    def _page_from_body(self, url: str, body: bytes, content_type: str) -> FetchOutcome:
        text = body.decode("utf-8", errors="replace")
        if "json" in content_type:
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                raise FetchError(url, f"invalid JSON: {exc}") from exc
            fields = parse_json_posting(data) if isinstance(data, dict) else {}
            return FetchedPage(fields=fields, raw_artifacts={"json": body}, content_type=content_type)

        if has_removed_marker(_html_to_text(text) or ""):
            logger.info("Posting at %s shows a removed marker", url)
            return NotFound(url=url, reason="removed marker")
        return FetchedPage(
            fields=extract_posting_fields(text),
            raw_artifacts={"html": body},
            content_type=content_type or "text/html",
        )
