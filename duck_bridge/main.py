from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from duck_bridge import __version__
from duck_bridge.errors import BridgeError, InvalidRequestError
from duck_bridge.gateway.auth import Authenticator
from duck_bridge.runtime.governor import GovernorConfig, RateGovernor
from duck_bridge.runtime.rate_state import RedisRateStateStore, build_rate_state_store
from duck_bridge.service import ChatService
from duck_bridge.settings import get_settings
from duck_bridge.upstream.challenge import ChallengeSolver, MiniRacerChallengeExecutor
from duck_bridge.upstream.client import UpstreamClient

app = FastAPI(
    title="duck-bridge",
    description="OpenAI-compatible chat API backed by the Duck.ai chat service.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    base_url = settings.upstream_base_url.rstrip("/")

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.upstream_timeout_seconds,
            connect=settings.upstream_connect_timeout_seconds,
        ),
    )
    rate_state_store = build_rate_state_store(
        path=settings.rate_state_path,
        redis_url=settings.redis_url,
        redis_key=settings.rate_state_redis_key,
        logger=logger,
    )
    governor = RateGovernor(
        rate_state_store,
        GovernorConfig(
            max_requests=max(1, settings.rate_limit_max_requests),
            window_ms=max(1, settings.rate_limit_window_ms),
            min_interval_ms=max(0, settings.rate_limit_min_interval_ms),
            buffer_ms=max(0, settings.rate_limit_buffer_ms),
        ),
    )
    solver = ChallengeSolver(
        http_client,
        status_url=f"{base_url}/duckchat/v1/status",
        executor=MiniRacerChallengeExecutor(settings.challenge_timeout_seconds),
    )
    upstream = UpstreamClient(
        http_client,
        governor=governor,
        solver=solver,
        chat_url=f"{base_url}/duckchat/v1/chat",
        fe_version=settings.upstream_fe_version,
    )

    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.http_client = http_client
    app.state.rate_state_store = rate_state_store
    app.state.governor = governor
    app.state.chat_service = ChatService(
        upstream,
        governor,
        default_model=settings.default_model,
        available_models=settings.available_models_list,
    )
    logger.info(
        (
            "startup complete upstream=%s default_model=%s models=%d auth_required=%s "
            "rate_limit=%d/%dms min_interval_ms=%d"
        ),
        base_url,
        settings.default_model,
        len(settings.available_models_list),
        app.state.authenticator.required,
        settings.rate_limit_max_requests,
        settings.rate_limit_window_ms,
        settings.rate_limit_min_interval_ms,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    http_client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
    store = getattr(app.state, "rate_state_store", None)
    if isinstance(store, RedisRateStateStore):
        await store.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    service: ChatService = app.state.chat_service
    return service.list_models()


@app.get("/v1/rate-limit/status")
async def rate_limit_status() -> dict[str, Any]:
    service: ChatService = app.state.chat_service
    return await service.rate_limit_status()


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequestError("Invalid JSON format") from exc

    service: ChatService = app.state.chat_service
    chat_request = service.validate_request(payload)

    if chat_request.stream:
        frames = await service.create_chat_completion_stream(chat_request)
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers=_STREAM_HEADERS,
            background=BackgroundTask(frames.aclose),
        )

    completion = await service.create_chat_completion(chat_request)
    return JSONResponse(content=completion)


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "request_failed path=%s error_type=%s error=%s",
            request.url.path,
            exc.__class__.__name__,
            exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(),
        headers=exc.headers() or None,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        message, code = "Not found", "not_found"
    elif exc.status_code == 405:
        message, code = "Method not allowed", "method_not_allowed"
    else:
        message, code = str(exc.detail), "invalid_request"
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": message,
                "type": "invalid_request_error",
                "param": None,
                "code": code,
            },
        },
        headers=getattr(exc, "headers", None),
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("duck_bridge.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
