"""
Normalization utilities for captured job fields.

Everything the diff engine compares and everything that goes into a
snapshot's ``content_hash`` passes through ``normalize_fields`` first, so
cosmetic differences (surrounding whitespace, "Full-Time" versus
"full time", "$120,000" versus ``120000``) never register as changes.

The normalization rules are intentionally few:

* strings are trimmed and internal whitespace runs collapse to one space;
* enum-like fields (employment type, status, currency) are case folded and
  mapped onto a small canonical vocabulary;
* salaries become integers;
* empty strings become ``None``.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from .models import TRACKED_FIELDS, Job, JobStatus

_WHITESPACE = re.compile(r"\s+")

EMPLOYMENT_TYPES = {
    "full_time": "full_time",
    "fulltime": "full_time",
    "full": "full_time",
    "permanent": "full_time",
    "part_time": "part_time",
    "parttime": "part_time",
    "part": "part_time",
    "contract": "contract",
    "contractor": "contract",
    "freelance": "contract",
    "temporary": "temporary",
    "temp": "temporary",
    "internship": "internship",
    "intern": "internship",
    "co_op": "internship",
}

STATUS_ALIASES = {
    "active": JobStatus.ACTIVE.value,
    "open": JobStatus.ACTIVE.value,
    "published": JobStatus.ACTIVE.value,
    "closed": JobStatus.CLOSED.value,
    "removed": JobStatus.CLOSED.value,
    "expired": JobStatus.CLOSED.value,
    "filled": JobStatus.CLOSED.value,
}

TRACKING_KEYS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "ref", "referrer", "gh_src", "source", "src", "trk", "trackingid",
}


def stable_id(*parts: str) -> str:
    """Return a stable, deterministic identifier for the given parts.

    The parts are joined with ``|`` and hashed with SHA256; only the first
    24 hex characters are kept to stay compact while keeping collisions
    negligible.
    """
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:24]


def canonicalize_url(url: str) -> str:
    """Canonicalize a job URL.

    Removes tracking parameters and normalizes the scheme and hostname.  If the
    URL is malformed, returns it unchanged.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return url

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    path = parsed.path.rstrip("/")

    query_params = parse_qsl(parsed.query, keep_blank_values=True)
    cleaned_params = [(k, v) for k, v in query_params if k.lower() not in TRACKING_KEYS]
    query = urlencode(sorted(cleaned_params))

    return urlunparse((scheme, netloc, path, "", query, ""))


def normalize_text(value: Any) -> Optional[str]:
    """Trim and collapse whitespace; empty values become ``None``."""
    if value is None:
        return None
    text = _WHITESPACE.sub(" ", str(value)).strip()
    return text or None


def _enum_key(value: Any) -> Optional[str]:
    text = normalize_text(value)
    if text is None:
        return None
    return re.sub(r"[\s\-/]+", "_", text.casefold())


def normalize_employment_type(value: Any) -> Optional[str]:
    key = _enum_key(value)
    if key is None:
        return None
    return EMPLOYMENT_TYPES.get(key, key)


def normalize_status(value: Any) -> str:
    key = _enum_key(value)
    if key is None:
        return JobStatus.ACTIVE.value
    return STATUS_ALIASES.get(key, key)


def normalize_salary(value: Any) -> Optional[int]:
    """Coerce a salary figure to an integer.

    Accepts numbers and strings such as ``"$120,000"``, ``"120000.00"`` or
    ``"120k"``. Unparseable values are treated as missing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value))
    text = str(value).strip().lower().replace(",", "").replace("_", "")
    text = re.sub(r"^[^\d]+", "", text)
    if not text:
        return None
    multiplier = 1
    if text.endswith("k"):
        multiplier = 1000
        text = text[:-1]
    try:
        return int(round(float(text) * multiplier))
    except ValueError:
        return None


def normalize_currency(value: Any) -> Optional[str]:
    text = normalize_text(value)
    return text.upper() if text else None


_NORMALIZERS = {
    "salary_min": normalize_salary,
    "salary_max": normalize_salary,
    "salary_currency": normalize_currency,
    "employment_type": normalize_employment_type,
    "status": normalize_status,
}


def normalize_field(name: str, value: Any) -> Any:
    return _NORMALIZERS.get(name, normalize_text)(value)


def normalize_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the tracked field set, normalized, in ``TRACKED_FIELDS`` order.

    Keys outside the tracked set are dropped; missing keys become ``None``
    (``status`` defaults to active).
    """
    return {name: normalize_field(name, raw.get(name)) for name in TRACKED_FIELDS}


def content_hash(fields: Mapping[str, Any]) -> str:
    """Deterministic SHA256 over a normalized field set."""
    payload = json.dumps(
        {name: fields.get(name) for name in TRACKED_FIELDS},
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def job_for_url(url: str, **config: Any) -> Job:
    """Build a ``Job`` whose identity is derived from its canonical URL.

    Keyword arguments are passed through to ``Job`` (title, company,
    frequency_hours, monitoring_enabled, priority_override, ...).
    """
    canonical = canonicalize_url(url)
    return Job(job_id=stable_id(canonical), url=url.strip(), canonical_url=canonical, **config)
