from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import quote, urlencode

import httpx

log = logging.getLogger(__name__)

# Free models first; the paid ones at the tail need pollen credits
IMAGE_MODELS: tuple = (
    "flux",
    "turbo",
    "klein",
    "klein-large",
    "gptimage",
    "gptimage-large",
    "seedream",
    "kontext",
    "zimage",
    "nanobanana",
    "seedream-pro",
    "nanobanana-pro",
)

VIDEO_MODELS: tuple = (
    "wan",
    "seedance",
    "seedance-pro",
    "veo",
)

IMAGE_ENDPOINT = "https://image.pollinations.ai/prompt/"
VIDEO_ENDPOINT = "https://gen.pollinations.ai/image/"

DEFAULT_SIZE = 1024
MIN_SIZE = 64
MAX_SIZE = 2048
MAX_PROMPT_CHARS = 2000
SEED_RANGE = 1_000_000

MODEL_HEADER = "X-Model-Used"


class InvalidMediaParameter(ValueError):
    """Query parameter that is not an integer; the message is the parameter name."""


def clamp_size(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_SIZE
    return max(MIN_SIZE, min(MAX_SIZE, int(value)))


def clean_prompt(prompt: Optional[str]) -> str:
    return (prompt or "").strip()[:MAX_PROMPT_CHARS]


def image_url(prompt: str, model: str, params: Dict[str, Any], api_key: str = "") -> str:
    query = {
        "width": params.get("width", DEFAULT_SIZE),
        "height": params.get("height", DEFAULT_SIZE),
        "seed": params.get("seed", 0),
        "nologo": "true",
        "model": model,
    }
    if api_key:
        query["key"] = api_key
    return f"{IMAGE_ENDPOINT}{quote(prompt, safe='')}?{urlencode(query)}"


def video_url(prompt: str, model: str, params: Dict[str, Any], api_key: str = "") -> str:
    query = {"model": model}
    if api_key:
        query["key"] = api_key
    return f"{VIDEO_ENDPOINT}{quote(prompt, safe='')}?{urlencode(query)}"


@dataclass
class MediaResult:
    ok: bool
    model: Optional[str] = None
    response: Optional[httpx.Response] = None
    errors: List[str] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        if self.response is None:
            return ""
        return self.response.headers.get("content-type", "")


class MediaGenerator:
    """
    Walks a fixed model list against the media provider and hands back the
    first response that really is ``<kind>/*``.

    The accepted response is returned unread (opened with ``stream=True``);
    the caller must stream it out and close it.
    """

    def __init__(
        self,
        kind: str,
        models: Sequence[str],
        url_builder: Callable[[str, str, Dict[str, Any], str], str],
        http: httpx.AsyncClient,
        *,
        api_key: str = "",
        timeout: float = 60.0,
        min_bytes: int = 0,
    ) -> None:
        self.kind = kind
        self.content_prefix = f"{kind}/"
        self.models = tuple(models)
        self.url_builder = url_builder
        self.http = http
        self.api_key = api_key
        self.timeout = timeout
        self.min_bytes = min_bytes

    def _reject_reason(self, model: str, resp: httpx.Response) -> Optional[str]:
        if not resp.is_success:
            return f"Model {model} failed with {resp.status_code}"
        content_type = resp.headers.get("content-type")
        if not content_type or not content_type.lower().startswith(self.content_prefix):
            return f"Model {model} returned non-{self.kind} content type: {content_type}"
        if self.min_bytes > 0:
            declared = resp.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) < self.min_bytes:
                return f"Model {model} returned small {self.kind} ({declared} bytes)"
        return None

    async def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> MediaResult:
        params = dict(params or {})
        errors: List[str] = []

        for i, model in enumerate(self.models):
            url = self.url_builder(prompt, model, params, self.api_key)
            log.info("%s: trying model=%s (%d/%d)", self.kind, model, i + 1, len(self.models))
            try:
                request = self.http.build_request("GET", url, timeout=self.timeout)
                resp = await self.http.send(request, stream=True)
            except httpx.HTTPError as exc:
                msg = f"Model {model} error: {exc!r}"
                log.warning("%s: %s", self.kind, msg)
                errors.append(msg)
                continue

            reason = self._reject_reason(model, resp)
            if reason is not None:
                await resp.aclose()
                log.warning("%s: %s", self.kind, reason)
                errors.append(reason)
                continue

            log.info("%s: success with model=%s", self.kind, model)
            return MediaResult(ok=True, model=model, response=resp, errors=errors)

        log.error("%s: all %d models failed: %s", self.kind, len(self.models), errors)
        return MediaResult(ok=False, errors=errors)


def _int_param(name: str, raw: Union[int, str, None]) -> Optional[int]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        return int(raw)
    except ValueError:
        raise InvalidMediaParameter(name) from None


def image_params(
    width: Union[int, str, None],
    height: Union[int, str, None],
    seed: Union[int, str, None],
) -> Dict[str, Any]:
    """Query parameters for an image call; raises InvalidMediaParameter on non-integers."""
    width_value = _int_param("width", width)
    height_value = _int_param("height", height)
    seed_value = _int_param("seed", seed)
    return {
        "width": clamp_size(width_value),
        "height": clamp_size(height_value),
        "seed": random.randrange(SEED_RANGE) if seed_value is None else seed_value,
    }
