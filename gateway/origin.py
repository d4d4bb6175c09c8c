from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from fastapi import Response

ALLOWED_REQUEST_HEADERS = "Content-Type"


def is_origin_allowed(origin: Optional[str], allowed_origins: Iterable[str]) -> bool:
    """
    Native apps and server-to-server callers omit Origin, so an absent or
    empty origin passes. Browsers always send one, and only those are held
    against the allow-list.
    """
    if not origin:
        return True
    return origin in allowed_origins


def build_cors_headers(
    origin: Optional[str],
    allowed_origins: Iterable[str],
    allowed_methods: str,
    extra_headers: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "Access-Control-Allow-Methods": allowed_methods,
        "Access-Control-Allow-Headers": ALLOWED_REQUEST_HEADERS,
        "Vary": "Origin",
    }
    # A disallowed origin gets no echo and the browser blocks the response
    if origin and is_origin_allowed(origin, allowed_origins):
        headers["Access-Control-Allow-Origin"] = origin
    if extra_headers:
        headers.update(extra_headers)
    return headers


def enforce_allowed_origin(origin: Optional[str], allowed_origins: Iterable[str]) -> Optional[str]:
    """Return an error message when the origin must be rejected, else None."""
    if is_origin_allowed(origin, allowed_origins):
        return None
    return f"Origin not allowed: {origin}"


def preflight_response(
    origin: Optional[str],
    allowed_origins: Iterable[str],
    allowed_methods: str,
) -> Response:
    if origin and not is_origin_allowed(origin, allowed_origins):
        return Response(status_code=403)
    return Response(
        status_code=204,
        headers=build_cors_headers(origin, allowed_origins, allowed_methods),
    )
