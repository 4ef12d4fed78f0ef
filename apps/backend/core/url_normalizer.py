"""
URL normalization for cache and dedupe keys.

Tracking parameters are stripped; every other query parameter is kept, including
vendor job identifiers such as ``gh_jid`` which distinguish individual postings.
"""

import logging
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

logger = logging.getLogger(__name__)

TRACKING_PREFIXES = ("utm_",)
TRACKING_KEYS = frozenset({
    "ref",
    "referrer",
    "fbclid",
    "gclid",
    "dclid",
    "msclkid",
    "yclid",
    "igshid",
    "mc_cid",
    "mc_eid",
    "_hsenc",
    "_hsmi",
    "trk",
    "trackingid",
    "gh_src",
    "lever-source",
    "lever-origin",
})


def is_tracking_param(key: str) -> bool:
    """Check whether a query parameter is a known tracking parameter."""
    lowered = key.lower()
    return lowered.startswith(TRACKING_PREFIXES) or lowered in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """
    Canonicalize a URL for use as a cache key.

    Lowercases scheme and host, drops default ports, trailing slashes and
    fragments, removes tracking parameters and sorts the remaining ones.
    Input that cannot be parsed as an absolute http(s) URL is returned unchanged.
    """
    if not isinstance(raw_url, str):
        return raw_url

    try:
        parsed = urlparse(raw_url.strip())
        # Accessing .port validates it
        parsed.port
    except ValueError:
        logger.debug(f"[url_normalizer] Leaving malformed URL untouched: {raw_url!r}")
        return raw_url

    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https") or not parsed.netloc:
        return raw_url

    netloc = parsed.netloc.lower()
    if ":" in netloc and not netloc.endswith("]"):
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not is_tracking_param(key)
    ]
    query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def extract_domain(url: str) -> str:
    """Host part of a URL, or 'unknown' when it has none."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or "unknown"
