from __future__ import annotations

import logging
import os
from typing import Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

DEFAULT_ALLOWED_ORIGINS: Tuple[str, ...] = (
    "https://plainly.live",
    "https://www.plainly.live",
    "http://localhost:5173",
    "http://localhost:4173",
    "http://127.0.0.1:5173",
)

GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
WEB3FORMS_URL = "https://api.web3forms.com/submit"

# Rate-limit scopes; counters are never shared between them
SCOPE_TEXT = "ai-text"
SCOPE_IMAGE = "ai-image"
SCOPE_VIDEO = "ai-video"
SCOPE_FEEDBACK = "feedback"

# scope -> (env prefix, default max, default window ms)
_SCOPE_DEFAULTS: Dict[str, Tuple[str, int, int]] = {
    SCOPE_TEXT: ("AI", 30, 60_000),
    SCOPE_IMAGE: ("IMAGE", 12, 60_000),
    SCOPE_VIDEO: ("VIDEO", 4, 60_000),
    SCOPE_FEEDBACK: ("FEEDBACK", 10, 60_000),
}


class ScopeLimit(BaseModel):
    max_requests: int = Field(..., ge=1)
    window_ms: int = Field(..., ge=1)


def _default_limits() -> Dict[str, ScopeLimit]:
    return {
        scope: ScopeLimit(max_requests=max_requests, window_ms=window_ms)
        for scope, (_, max_requests, window_ms) in _SCOPE_DEFAULTS.items()
    }


class Settings(BaseModel):
    """Runtime configuration for the gateway.

    Everything here is read once at startup; handlers only ever see the
    instance that ``create_app`` was built with.
    """

    model_config = {"frozen": True}

    allowed_origins: Tuple[str, ...] = DEFAULT_ALLOWED_ORIGINS
    groq_api_key: str = ""
    groq_api_url: str = GROQ_API_URL
    pollinations_api_key: str = ""
    web3forms_access_key: str = ""
    web3forms_url: str = WEB3FORMS_URL
    rate_limits: Dict[str, ScopeLimit] = Field(default_factory=_default_limits)
    prune_probability: float = Field(0.01, ge=0.0, le=1.0)
    llm_timeout_secs: float = 60.0
    image_timeout_secs: float = 60.0
    video_timeout_secs: float = 120.0
    image_min_bytes: int = 0
    video_min_bytes: int = 0

    def limit_for(self, scope: str) -> ScopeLimit:
        limit = self.rate_limits.get(scope)
        if limit is None:
            _, max_requests, window_ms = _SCOPE_DEFAULTS[scope]
            limit = ScopeLimit(max_requests=max_requests, window_ms=window_ms)
        return limit


def parse_origins(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated origin list; empty input means the defaults."""
    if not raw or not raw.strip():
        return DEFAULT_ALLOWED_ORIGINS
    seen: list[str] = []
    for part in raw.split(","):
        origin = part.strip().rstrip("/")
        if origin and origin not in seen:
            seen.append(origin)
    return tuple(seen) or DEFAULT_ALLOWED_ORIGINS


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(float(raw))
    except ValueError:
        log.warning("config: %s=%r is not a number; using %s", name, raw, default)
        return default
    if value <= 0:
        log.warning("config: %s must be positive; using %s", name, default)
        return default
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("config: %s=%r is not a number; using %s", name, raw, default)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ

    limits: Dict[str, ScopeLimit] = {}
    for scope, (prefix, max_default, window_default) in _SCOPE_DEFAULTS.items():
        limits[scope] = ScopeLimit(
            max_requests=_env_int(env, f"{prefix}_RATE_LIMIT_MAX", max_default),
            window_ms=_env_int(env, f"{prefix}_RATE_LIMIT_WINDOW_MS", window_default),
        )

    prune = _env_float(env, "RATE_LIMIT_PRUNE_PROBABILITY", 0.01)
    if not 0.0 <= prune <= 1.0:
        log.warning("config: RATE_LIMIT_PRUNE_PROBABILITY out of range; using 0.01")
        prune = 0.01

    return Settings(
        allowed_origins=parse_origins(env.get("ALLOWED_ORIGINS")),
        groq_api_key=(env.get("GROQ_API_KEY") or "").strip(),
        groq_api_url=(env.get("GROQ_API_URL") or "").strip() or GROQ_API_URL,
        pollinations_api_key=(env.get("POLLINATIONS_API_KEY") or "").strip(),
        web3forms_access_key=(env.get("WEB3FORMS_ACCESS_KEY") or "").strip(),
        web3forms_url=(env.get("WEB3FORMS_URL") or "").strip() or WEB3FORMS_URL,
        rate_limits=limits,
        prune_probability=prune,
        llm_timeout_secs=_env_float(env, "LLM_TIMEOUT_SECS", 60.0),
        image_timeout_secs=_env_float(env, "IMAGE_TIMEOUT_SECS", 60.0),
        video_timeout_secs=_env_float(env, "VIDEO_TIMEOUT_SECS", 120.0),
        image_min_bytes=max(0, int(_env_float(env, "IMAGE_MIN_BYTES", 0))),
        video_min_bytes=max(0, int(_env_float(env, "VIDEO_MIN_BYTES", 0))),
    )
