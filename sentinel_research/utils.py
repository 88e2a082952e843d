"""Shared utility functions for the Sentinel research pipeline."""
import ipaddress
import json
import logging
import re
import socket
from typing import Any, List, Optional
from urllib.parse import quote_plus, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

SEARCH_SOURCE_PREFIX = "https://search.local/query?q="

_URL_RE = re.compile(r"(https?://[^\s<>\"'()\[\]]+)")
_TRAILING_PUNCT_RE = re.compile(r"[.,;:\"')\]}]+$")
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")

# Hosts that only ever appear as search-engine redirects or grounding proxies
_REDIRECT_MARKERS = ("vertexaisearch", "google.com/search", "google.com/url", "search.local/")


def strip_think_blocks(text: str) -> str:
    """Remove <think>...</think> blocks from LLM output (reasoning-model safety net)."""
    return re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()


def safe_parse_json(text: Optional[str], fallback: Any) -> Any:
    """Parse JSON out of an LLM reply, returning ``fallback`` on any failure.

    Handles markdown code fences, <think> blocks and leading/trailing prose by
    slicing from the first ``{``/``[`` to the matching last ``}``/``]``.
    """
    if not text:
        return fallback
    cleaned = strip_think_blocks(text)
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)

    first_brace = cleaned.find("{")
    first_bracket = cleaned.find("[")
    if first_brace != -1 and (first_bracket == -1 or first_brace < first_bracket):
        start, end = first_brace, cleaned.rfind("}") + 1
    elif first_bracket != -1:
        start, end = first_bracket, cleaned.rfind("]") + 1
    else:
        start, end = -1, -1
    if start != -1 and end > start:
        cleaned = cleaned[start:end]

    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning(f"JSON parse error, using fallback: {e}")
        return fallback


def extract_urls(text: str) -> List[str]:
    """Return the distinct http(s) URLs in ``text`` in first-seen order."""
    if not text:
        return []
    seen = set()
    urls = []
    for match in _URL_RE.findall(text):
        url = _TRAILING_PUNCT_RE.sub("", match)
        if url and url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


def is_valid_source_url(url: str) -> bool:
    """Reject search redirect links that never point at a citable page."""
    if not url or not url.startswith(("http://", "https://")):
        return False
    return not any(marker in url for marker in _REDIRECT_MARKERS)


def format_source_title(url: str) -> str:
    """Derive a readable title from a URL's hostname."""
    try:
        hostname = urlparse(url).hostname
    except (ValueError, AttributeError):
        hostname = None
    if not hostname:
        return "External Source"
    name = re.sub(r"^www\.", "", hostname)
    return name[:1].upper() + name[1:]


def search_source_id(query: str) -> str:
    """Deterministic synthetic source identifier for a search vector's own summary."""
    return f"{SEARCH_SOURCE_PREFIX}{quote_plus(query)}"


def extract_content_from_html(soup: BeautifulSoup, max_chars: int = 8000) -> str:
    """Extract meaningful text content from parsed HTML.

    Uses a priority-based extraction strategy:
    1. <main> tag
    2. <article> tag
    3. <div> with content-related classes
    4. <body> tag (fallback)

    Removes script, style, nav, footer, header, aside, iframe tags first.

    Args:
        soup: BeautifulSoup parsed HTML (will be modified in-place by decompose).
        max_chars: Maximum characters to return.

    Returns:
        Extracted and cleaned text content, truncated to max_chars.
    """
    for tag in soup.find_all(["script", "style", "nav", "footer", "header", "aside", "iframe"]):
        tag.decompose()

    content_element = (
        soup.find("main")
        or soup.find("article")
        or soup.find("div", class_=re.compile(r"content|main-content|post-content|article-content", re.I))
        or soup.find("body")
    )

    if content_element:
        text = content_element.get_text(separator=" ", strip=True)
    else:
        text = soup.get_text(separator=" ", strip=True)

    text = re.sub(r"\s+", " ", text).strip()

    return text[:max_chars] if text else ""


def is_safe_url(url: str) -> bool:
    """Check that a URL does not target private/link-local IP ranges (SSRF guard).

    Returns True if the URL resolves to a public IP or cannot be resolved.
    Returns False for RFC-1918, link-local (169.254.x.x), loopback, and IPv6 private addresses.
    Only allows HTTP/HTTPS schemes.
    """
    try:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            return False
        hostname = parsed.hostname
        if not hostname:
            return False
        for info in socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM):
            addr = info[4][0]
            ip = ipaddress.ip_address(addr)
            if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved:
                return False
    except (socket.gaierror, ValueError, OSError):
        # DNS resolution failure: allow, the fetch itself will fail
        return True
    return True
