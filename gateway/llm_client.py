from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationInfo, field_validator

from gateway.failures import primary_failure, should_try_next

log = logging.getLogger(__name__)

MODEL_PRIMARY = "llama-3.1-8b-instant"
MODEL_SECONDARY = "allam-2-7b"
MODEL_TERTIARY = "moonshotai/kimi-k2-instruct"
MODEL_VERSATILE = "llama-3.3-70b-versatile"
MODEL_SCOUT = "meta-llama/llama-4-scout-17b-16e-instruct"
MODEL_CREATIVE = "meta-llama/llama-4-maverick-17b-128e-instruct"
MODEL_SEARCH = "groq/compound"
MODEL_SEARCH_MINI = "groq/compound-mini"

FALLBACK_CHAIN: tuple = (
    MODEL_PRIMARY,
    MODEL_SECONDARY,
    MODEL_TERTIARY,
    MODEL_VERSATILE,
    MODEL_SCOUT,
    MODEL_CREATIVE,
)
SEARCH_CHAIN: tuple = (MODEL_SEARCH, MODEL_SEARCH_MINI)

DEFAULT_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.7
EXHAUSTED_MESSAGE = "All models exhausted."


def _dict_or_empty(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class GenerationOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    model: Optional[str] = None
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, alias="maxTokens")
    temperature: float = DEFAULT_TEMPERATURE

    @field_validator("max_tokens", "temperature", mode="before")
    @classmethod
    def _null_means_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return cls.model_fields[info.field_name].default
        return value


class TextGenerationRequest(BaseModel):
    """Body of a text generation call. Unknown fields are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: Any = None
    prompt: Any = None
    system_prompt: Any = Field(None, alias="systemPrompt")
    search: Annotated[bool, BeforeValidator(bool)] = False
    options: Annotated[GenerationOptions, BeforeValidator(_dict_or_empty)] = Field(default_factory=GenerationOptions)

    def chat_messages(self) -> List[Dict[str, str]]:
        return normalize_messages(
            {"messages": self.messages, "prompt": self.prompt, "systemPrompt": self.system_prompt}
        )


@dataclass
class TextResult:
    ok: bool
    status: int
    content: str = ""
    model: Optional[str] = None
    error: Optional[str] = None
    attempts: List[str] = field(default_factory=list)

    def to_body(self) -> Dict[str, Any]:
        if self.ok:
            return {"content": self.content, "model": self.model}
        body: Dict[str, Any] = {"error": self.error}
        if self.model:
            body["model"] = self.model
        return body


def normalize_messages(body: Any) -> List[Dict[str, str]]:
    """Chat turns from either a ``messages`` array or a prompt/systemPrompt pair."""
    if not isinstance(body, dict):
        return []

    raw_messages = body.get("messages")
    if isinstance(raw_messages, list) and raw_messages:
        out: List[Dict[str, str]] = []
        for m in raw_messages:
            if not isinstance(m, dict):
                continue
            role = m.get("role")
            content = m.get("content")
            if not isinstance(content, str):
                content = ""
            if role and isinstance(role, str) and content:
                out.append({"role": role, "content": content})
        return out

    prompt = body.get("prompt") if isinstance(body.get("prompt"), str) else ""
    system_prompt = body.get("systemPrompt") if isinstance(body.get("systemPrompt"), str) else ""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    if prompt:
        messages.append({"role": "user", "content": prompt})
    return messages


def candidate_models(requested_model: Optional[str] = None, search: bool = False) -> List[str]:
    if search:
        return list(SEARCH_CHAIN)
    sequence: List[str] = []
    if requested_model:
        sequence.append(requested_model)
    for model in FALLBACK_CHAIN:
        if model not in sequence:
            sequence.append(model)
    return sequence


def _error_message(data: Any, status: int) -> str:
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg:
                return msg
        elif isinstance(err, str) and err:
            return err
    return f"Groq API error ({status})"


def _extract_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


class TextCompletionClient:
    """Tries Groq chat-completion models one at a time until one answers."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        endpoint: str,
        timeout: float = 60.0,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout

    async def _call(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        return await self.http.post(self.endpoint, headers=headers, json=payload, timeout=self.timeout)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        search: bool = False,
    ) -> TextResult:
        models = candidate_models(model, search)
        last_error = EXHAUSTED_MESSAGE
        attempts: List[str] = []

        for candidate in models:
            attempts.append(candidate)
            payload = {
                "model": candidate,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
            try:
                resp = await self._call(payload)
            except httpx.HTTPError as exc:
                last_error = f"Groq request error: {exc!r}"
                log.warning("groq model=%s transport error: %r; trying next", candidate, exc)
                continue

            try:
                data = resp.json()
            except ValueError:
                data = None

            if resp.is_success:
                if data is None:
                    last_error = f"Groq returned a non-JSON body ({resp.status_code})"
                    log.warning("groq model=%s non-JSON success body; trying next", candidate)
                    continue
                log.info("groq model=%s ok after %d attempt(s)", candidate, len(attempts))
                return TextResult(
                    ok=True,
                    status=200,
                    content=_extract_content(data),
                    model=candidate,
                    attempts=attempts,
                )

            message = _error_message(data, resp.status_code)
            last_error = message
            if not should_try_next(resp.status_code, message, search):
                log.warning("groq model=%s terminal status=%s: %s", candidate, resp.status_code, message)
                return TextResult(
                    ok=False,
                    status=resp.status_code,
                    model=candidate,
                    error=message,
                    attempts=attempts,
                )
            log.warning(
                "groq model=%s status=%s kind=%s; trying next",
                candidate,
                resp.status_code,
                primary_failure(resp.status_code, message, search).value,
            )

        log.error("groq: all %d candidate(s) failed; last error: %s", len(attempts), last_error)
        return TextResult(ok=False, status=503, error=last_error, attempts=attempts)
