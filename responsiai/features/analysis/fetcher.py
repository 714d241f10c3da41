"""
Website fetch and basic responsiveness signals.

Fetched with a desktop user agent so sites don't redirect to a separate
mobile page, then scanned for the markers of a responsive layout.
"""
from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict

from responsiai.core.errors import UpstreamError, ValidationError

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FETCH_TIMEOUT_SECONDS = 15.0

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_DESCRIPTION_RES = (
    re.compile(r"<meta[^>]*name=[\"']description[\"'][^>]*content=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<meta[^>]*content=[\"']([^\"']+)[\"'][^>]*name=[\"']description[\"']", re.IGNORECASE),
)
_VIEWPORT_RE = re.compile(r"<meta[^>]*name=[\"']viewport[\"'][^>]*>", re.IGNORECASE)
_MEDIA_QUERY_RE = re.compile(r"@media[^{]*\(\s*(?:max|min)-width", re.IGNORECASE)
_FIXED_WIDTH_RE = re.compile(r"(?<![\w-])width\s*[:=]\s*[\"']?\s*(\d{4,})px", re.IGNORECASE)
_IMG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_RESPONSIVE_IMG_RE = re.compile(r"\bsrcset=|max-width\s*:\s*100%", re.IGNORECASE)


class AnalysisReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    status_code: int
    title: str
    description: str = ""
    has_viewport_meta: bool
    media_query_count: int
    fixed_width_count: int
    image_count: int
    responsive_image_count: int
    score: int


def normalize_url(url: str) -> str:
    value = (url or "").strip()
    if not value:
        raise ValidationError("url is required")
    if not value.startswith(("http://", "https://")):
        value = "https://" + value
    parsed = urlparse(value)
    if not parsed.hostname:
        raise ValidationError("url is not valid")
    return value


def _first_match(patterns, html: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(html)
        if match:
            return match.group(1).strip()
    return None


def score_html(url: str, status_code: int, html: str) -> AnalysisReport:
    title_match = _TITLE_RE.search(html)
    images = _IMG_RE.findall(html)
    report = {
        "url": url,
        "status_code": status_code,
        "title": title_match.group(1).strip() if title_match else (urlparse(url).hostname or url),
        "description": _first_match(_DESCRIPTION_RES, html) or "",
        "has_viewport_meta": bool(_VIEWPORT_RE.search(html)),
        "media_query_count": len(_MEDIA_QUERY_RE.findall(html)),
        "fixed_width_count": len(_FIXED_WIDTH_RE.findall(html)),
        "image_count": len(images),
        "responsive_image_count": sum(1 for tag in images if _RESPONSIVE_IMG_RE.search(tag)),
    }
    score = 0
    if report["has_viewport_meta"]:
        score += 40
    score += min(report["media_query_count"], 5) * 6
    if report["image_count"]:
        score += round(20 * report["responsive_image_count"] / report["image_count"])
    else:
        score += 20
    score += 10 if report["fixed_width_count"] == 0 else 0
    return AnalysisReport(score=min(score, 100), **report)


async def analyze_url(url: str, client: Optional[httpx.AsyncClient] = None) -> AnalysisReport:
    """Fetch url and score it. Raises UpstreamError if the site can't be fetched."""
    target = normalize_url(url)
    headers = {
        "User-Agent": DESKTOP_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=FETCH_TIMEOUT_SECONDS, follow_redirects=True)
    try:
        response = await client.get(target, headers=headers)
    except httpx.TimeoutException as e:
        raise UpstreamError("Request timed out. The website took too long to respond.") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to fetch website: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code >= 400:
        raise UpstreamError(f"HTTP {response.status_code}: {response.reason_phrase}")
    return score_html(str(response.url), response.status_code, response.text)
