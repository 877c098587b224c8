"""Blocked-site pattern matching and URL normalization for dedup keys."""

import re
from typing import Iterable, List, Optional, Union
from urllib.parse import SplitResult, urlsplit


def normalize_pattern_list(raw: Union[str, Iterable[str], None]) -> List[str]:
    if raw is None:
        return []
    lines = raw.splitlines() if isinstance(raw, str) else list(raw)
    return [line.strip() for line in lines if line and line.strip() and not line.strip().startswith("#")]


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    source = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
    return re.compile(source, re.IGNORECASE)


def _normalize_domain_pattern(pattern: str) -> str:
    return str(pattern or "").strip().strip(".").lower()


def _is_domain_pattern(pattern: str) -> bool:
    return "://" not in pattern and "/" not in pattern


def _matches_domain(hostname: str, pattern: str) -> bool:
    host = (hostname or "").lower()
    normalized = _normalize_domain_pattern(pattern)
    if not host or not normalized:
        return False
    if "*" in normalized:
        return bool(_glob_to_regex(normalized).match(host))
    return host == normalized or host.endswith("." + normalized)


def parse_url(url: Optional[str]) -> Optional[SplitResult]:
    if not url or not isinstance(url, str):
        return None
    candidate = url.strip()
    if not candidate:
        return None
    if "://" not in candidate and not candidate.lower().startswith(("about:", "data:", "mailto:")):
        # Common input shape: "example.com/path"
        candidate = "https://" + candidate
    try:
        parsed = urlsplit(candidate)
    except ValueError:
        return None
    if parsed.scheme in ("http", "https") and not parsed.hostname:
        return None
    return parsed


def matches_pattern(url: str, pattern: str) -> bool:
    parsed = parse_url(url)
    source = str(pattern or "").strip().lower()
    if not source:
        return False
    if parsed is None:
        raw = str(url or "").strip().lower()
        return bool(raw) and bool(_glob_to_regex(source).match(raw))

    if _is_domain_pattern(source):
        return _matches_domain(parsed.hostname or "", source)

    query = f"?{parsed.query}" if parsed.query else ""
    full_url = parsed.geturl().lower()
    host_path = f"{parsed.hostname or ''}{parsed.path}{query}".lower()
    if "*" in source:
        regex = _glob_to_regex(source)
        if regex.match(full_url):
            return True
        return "://" not in source and bool(regex.match(host_path))
    if "://" in source:
        return source in full_url
    return source in host_path


def is_blocked_url(url: Optional[str], patterns: Iterable[str]) -> bool:
    if not url:
        return False
    return any(matches_pattern(url, pattern) for pattern in patterns)


def normalize_url_for_dedup(url: Optional[str]) -> Optional[str]:
    """Canonical key: scheme, host without ``www.``, path without trailing slash, query kept."""
    if not url or not isinstance(url, str):
        return None
    trimmed = url.strip()
    if not trimmed:
        return None
    parsed = parse_url(trimmed)
    if parsed is None:
        return trimmed.lower().rstrip("/")
    scheme = parsed.scheme or "https"
    host = (parsed.netloc or "").lower()
    if host.startswith("www."):
        host = host[4:]
    path = "" if parsed.path == "/" else parsed.path.rstrip("/")
    query = f"?{parsed.query}" if parsed.query else ""
    if not host:
        return f"{scheme}:{path}{query}"
    return f"{scheme}://{host}{path}{query}"
