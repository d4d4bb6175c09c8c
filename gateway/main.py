import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from gateway.config import (
    SCOPE_FEEDBACK,
    SCOPE_IMAGE,
    SCOPE_TEXT,
    SCOPE_VIDEO,
    Settings,
    load_settings,
)
from gateway.feedback import FeedbackError, FeedbackRelay, is_honeypot_filled, parse_submission
from gateway.llm_client import TextCompletionClient, TextGenerationRequest
from gateway.media import (
    IMAGE_MODELS,
    InvalidMediaParameter,
    MODEL_HEADER,
    VIDEO_MODELS,
    MediaGenerator,
    MediaResult,
    clean_prompt,
    image_params,
    image_url,
    video_url,
)
from gateway.origin import build_cors_headers, enforce_allowed_origin, preflight_response
from gateway.ratelimit import FixedWindowRateLimiter, client_id_from_request, rate_limit_headers

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

POST_METHODS = "POST, OPTIONS"
GET_METHODS = "GET, OPTIONS"

TEXT_PATH = "/api/ai/groq"
IMAGE_PATH = "/api/ai/image"
VIDEO_PATH = "/api/ai/video"
FEEDBACK_PATH = "/api/feedback/submit"

_METHODS_BY_PATH = {
    TEXT_PATH: POST_METHODS,
    IMAGE_PATH: GET_METHODS,
    VIDEO_PATH: GET_METHODS,
    FEEDBACK_PATH: POST_METHODS,
}

_RATE_LIMIT_MESSAGES = {
    SCOPE_TEXT: "Too many AI requests. Please try again shortly.",
    SCOPE_IMAGE: "Too many image requests. Please try again shortly.",
    SCOPE_VIDEO: "Too many video requests. Please try again shortly.",
    SCOPE_FEEDBACK: "Too many feedback requests. Please try again shortly.",
}


def _origin(request: Request) -> Optional[str]:
    return request.headers.get("origin")


def _json(
    request: Request,
    data: Dict[str, Any],
    status: int = 200,
    methods: str = POST_METHODS,
    extra_headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    settings: Settings = request.app.state.settings
    headers = build_cors_headers(_origin(request), settings.allowed_origins, methods, extra_headers)
    return JSONResponse(content=data, status_code=status, headers=headers)


def _admit(request: Request, scope: str, methods: str) -> Optional[JSONResponse]:
    """Origin check then rate limit. Returns the rejection, or None to proceed."""
    settings: Settings = request.app.state.settings
    origin_error = enforce_allowed_origin(_origin(request), settings.allowed_origins)
    if origin_error:
        log.info("admission: rejected origin=%s path=%s", _origin(request), request.url.path)
        return _json(request, {"error": origin_error}, 403, methods)

    limit = settings.limit_for(scope)
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    client_id = client_id_from_request(request)
    result = limiter.check(client_id, scope, limit.max_requests, limit.window_ms)
    if not result.allowed:
        log.info("admission: rate limited scope=%s client=%s retry_after=%s", scope, client_id, result.retry_after_seconds)
        return _json(
            request,
            {"error": _RATE_LIMIT_MESSAGES[scope]},
            429,
            methods,
            rate_limit_headers(result),
        )
    return None


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _media_response(request: Request, result: MediaResult) -> Response:
    settings: Settings = request.app.state.settings
    upstream = result.response
    headers = build_cors_headers(
        _origin(request),
        settings.allowed_origins,
        GET_METHODS,
        {
            MODEL_HEADER: result.model or "",
            "Cache-Control": "no-store",
            "Access-Control-Expose-Headers": MODEL_HEADER,
        },
    )
    return StreamingResponse(
        upstream.aiter_bytes(),
        status_code=200,
        media_type=result.content_type,
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )


async def _generate_media(
    request: Request,
    generator: MediaGenerator,
    scope: str,
    prompt: Optional[str],
    build_params: Callable[[], Dict[str, Any]],
) -> Response:
    rejected = _admit(request, scope, GET_METHODS)
    if rejected is not None:
        return rejected

    text = clean_prompt(prompt)
    if not text:
        return _json(request, {"error": "Missing prompt."}, 400, GET_METHODS)

    try:
        params = build_params()
    except InvalidMediaParameter as exc:
        return _json(request, {"error": f"Invalid request parameters: {exc}"}, 400, GET_METHODS)

    result = await generator.generate(text, params)
    if not result.ok:
        return _json(
            request,
            {
                "error": f"All {generator.kind} models failed. Please try again later.",
                "details": result.errors,
            },
            503,
            GET_METHODS,
        )
    return _media_response(request, result)


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
) -> FastAPI:
    """Composition root: every piece of shared state is built (or injected) here."""
    settings = settings or load_settings()
    owns_client = http_client is None
    http = http_client or httpx.AsyncClient(follow_redirects=True)
    limiter = rate_limiter or FixedWindowRateLimiter(prune_probability=settings.prune_probability)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(
            "gateway: starting origins=%d groq_key=%s web3forms_key=%s",
            len(settings.allowed_origins),
            bool(settings.groq_api_key),
            bool(settings.web3forms_access_key),
        )
        yield
        if owns_client:
            await http.aclose()

    app = FastAPI(title="Plainly Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limiter = limiter
    app.state.text_client = TextCompletionClient(
        http, settings.groq_api_key, settings.groq_api_url, timeout=settings.llm_timeout_secs
    )
    app.state.image_generator = MediaGenerator(
        "image",
        IMAGE_MODELS,
        image_url,
        http,
        api_key=settings.pollinations_api_key,
        timeout=settings.image_timeout_secs,
        min_bytes=settings.image_min_bytes,
    )
    app.state.video_generator = MediaGenerator(
        "video",
        VIDEO_MODELS,
        video_url,
        http,
        api_key=settings.pollinations_api_key,
        timeout=settings.video_timeout_secs,
        min_bytes=settings.video_min_bytes,
    )
    app.state.feedback_relay = FeedbackRelay(http, settings.web3forms_url)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.time()
        request.state.request_id = rid
        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            dur_ms = int((time.time() - start) * 1000)
            log.info(
                "rid=%s method=%s path=%s status=%s dur_ms=%d",
                rid,
                request.method,
                request.url.path,
                getattr(response, "status_code", "?"),
                dur_ms,
            )

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        methods = _METHODS_BY_PATH.get(request.url.path, POST_METHODS)
        origin_error = enforce_allowed_origin(_origin(request), settings.allowed_origins)
        if origin_error:
            return _json(request, {"error": origin_error}, 403, methods)
        fields = ", ".join(str(err.get("loc", ["?"])[-1]) for err in exc.errors())
        return _json(request, {"error": f"Invalid request parameters: {fields}"}, 400, methods)

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        log.exception("unhandled error path=%s", request.url.path)
        methods = _METHODS_BY_PATH.get(request.url.path, POST_METHODS)
        return _json(request, {"error": "Internal server error."}, 500, methods)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.options(TEXT_PATH)
    @app.options(FEEDBACK_PATH)
    def preflight_post(request: Request):
        return preflight_response(_origin(request), settings.allowed_origins, POST_METHODS)

    @app.options(IMAGE_PATH)
    @app.options(VIDEO_PATH)
    def preflight_get(request: Request):
        return preflight_response(_origin(request), settings.allowed_origins, GET_METHODS)

    @app.post(TEXT_PATH)
    async def generate_text(request: Request):
        rejected = _admit(request, SCOPE_TEXT, POST_METHODS)
        if rejected is not None:
            return rejected

        if not settings.groq_api_key:
            return _json(request, {"error": "Server is missing GROQ_API_KEY secret."}, 500)

        body = await _read_json(request)
        if body is None:
            return _json(request, {"error": "Invalid JSON request body."}, 400)

        try:
            payload = TextGenerationRequest.model_validate(body if isinstance(body, dict) else {})
        except ValidationError:
            return _json(request, {"error": "Invalid generation options."}, 400)

        messages = payload.chat_messages()
        if not messages:
            return _json(request, {"error": "Missing prompt/messages."}, 400)

        options = payload.options
        client: TextCompletionClient = request.app.state.text_client
        result = await client.complete(
            messages,
            model=options.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            search=payload.search,
        )
        return _json(request, result.to_body(), result.status)

    @app.get(IMAGE_PATH)
    async def generate_image(
        request: Request,
        prompt: Optional[str] = Query(None),
        width: Optional[str] = Query(None),
        height: Optional[str] = Query(None),
        seed: Optional[str] = Query(None),
    ):
        return await _generate_media(
            request,
            request.app.state.image_generator,
            SCOPE_IMAGE,
            prompt,
            lambda: image_params(width, height, seed),
        )

    @app.get(VIDEO_PATH)
    async def generate_video(request: Request, prompt: Optional[str] = Query(None)):
        return await _generate_media(request, request.app.state.video_generator, SCOPE_VIDEO, prompt, dict)

    @app.post(FEEDBACK_PATH)
    async def submit_feedback(request: Request):
        rejected = _admit(request, SCOPE_FEEDBACK, POST_METHODS)
        if rejected is not None:
            return rejected

        access_key = settings.web3forms_access_key
        if not access_key:
            return _json(request, {"error": "Server missing WEB3FORMS_ACCESS_KEY."}, 500)

        body = await _read_json(request)
        if not isinstance(body, dict):
            return _json(request, {"error": "Invalid JSON request body."}, 400)

        # Bots fill the hidden field; pretend it worked
        if is_honeypot_filled(body):
            log.info("feedback: honeypot filled; dropping submission")
            return _json(request, {"ok": True})

        try:
            submission = parse_submission(body)
        except FeedbackError as exc:
            return _json(request, {"error": str(exc)}, 400)

        relay: FeedbackRelay = request.app.state.feedback_relay
        if not await relay.submit(submission.build_payload(access_key)):
            return _json(request, {"error": "Failed to submit feedback."}, 502)
        return _json(request, {"ok": True})

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gateway.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
