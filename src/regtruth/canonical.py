from __future__ import annotations

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_TRACKING_PARAMS = (
    "gclid",
    "fbclid",
    "mc_cid",
    "mc_eid",
    "msclkid",
    "_ga",
)
TRACKING_PREFIXES = ("utm_",)
JOB_HASH_LENGTH = 16

_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize_url(url: str, extra_tracking_params: list[str] | tuple[str, ...] = ()) -> str:
    """Return the canonical form of ``url``.

    Tracking parameters are dropped, the rest sorted, the fragment removed,
    scheme and host lower-cased, default ports and trailing slashes stripped.
    Canonicalizing a canonical URL returns it unchanged.
    """
    if not url:
        return url
    try:
        split = urlsplit(url.strip())
        port = split.port
    except ValueError as exc:
        raise ValueError(f"invalid url {url!r}: {exc}") from exc
    scheme = (split.scheme or "https").lower()
    host = (split.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if split.username:
        userinfo = split.username
        if split.password:
            userinfo = f"{userinfo}:{split.password}"
        netloc = f"{userinfo}@{host}"
    if port and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"

    path = split.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    tracking = {param.lower() for param in DEFAULT_TRACKING_PARAMS}
    tracking.update(param.lower() for param in extra_tracking_params)
    query_params = [
        (key, value)
        for key, value in parse_qsl(split.query, keep_blank_values=True)
        if not _is_tracking_param(key, tracking)
    ]
    query = urlencode(sorted(query_params)) if query_params else ""
    return urlunsplit((scheme, netloc, path, query, ""))


def _is_tracking_param(key: str, tracking: set[str]) -> bool:
    lowered = key.lower()
    if lowered in tracking:
        return True
    return any(lowered.startswith(prefix) for prefix in TRACKING_PREFIXES)


def url_hash(url: str, extra_tracking_params: list[str] | tuple[str, ...] = ()) -> str:
    canonical = canonicalize_url(url, extra_tracking_params)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:JOB_HASH_LENGTH]


def job_id(source: str, url: str, extra_tracking_params: list[str] | tuple[str, ...] = ()) -> str:
    return f"{source}:{url_hash(url, extra_tracking_params)}"


def stage_job_id(stage: str, *parts: object) -> str:
    # Same identity scheme as job_id for stages keyed by records instead of URLs.
    material = "|".join(str(part) for part in parts)
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:JOB_HASH_LENGTH]
    return f"{stage}:{digest}"


def domain_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()
