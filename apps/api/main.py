# main.py
from pathlib import Path
from dotenv import load_dotenv
load_dotenv(dotenv_path=Path(__file__).resolve().with_name(".env"))
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pydantic
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.datastructures import Headers, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from clients import ProviderRegistry, Resolution
from errors import GatewayError, PayloadTooLargeError, ValidationError
from extractors import UploadedFile, extract_text
from prompts import compose_prompt
from relay import StreamRelay
from settings import Settings

logger = logging.getLogger(__name__)

PROMPT_REQUIRED = "Prompt is required"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatRequest(BaseModel):
    prompt: str = ""
    model: Optional[str] = None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # httpx logs full request URLs at INFO, and Gemini keys travel in the query string
    logging.getLogger("httpx").setLevel(logging.WARNING)


class OriginAllowListMiddleware:
    """Reject requests whose Origin is outside the allow-list before they reach a route."""

    def __init__(self, app: ASGIApp, allowed_origins: List[str]):
        self.app = app
        self.allowed_origins = set(allowed_origins)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            origin = Headers(scope=scope).get("origin")
            if origin and origin not in self.allowed_origins:
                logger.warning("[cors] blocked request from %s", origin)
                response = JSONResponse(
                    {"error": f"CORS policy blocked request from: {origin}"},
                    status_code=403,
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


async def read_upload(f: UploadFile, max_bytes: int) -> UploadedFile:
    if f.size is not None and f.size > max_bytes:
        raise PayloadTooLargeError(f"File exceeds the {max_bytes} byte upload limit")

    data = await f.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise PayloadTooLargeError(f"File exceeds the {max_bytes} byte upload limit")

    return UploadedFile(
        data=data,
        mime_type=f.content_type or "application/octet-stream",
        filename=f.filename or "file",
    )


def parse_chat_fields(fields: Dict[str, Any]) -> ChatRequest:
    try:
        chat = ChatRequest.model_validate(fields)
    except pydantic.ValidationError as e:
        loc = e.errors()[0].get("loc") or ("body",)
        if loc[0] == "prompt":
            raise ValidationError(PROMPT_REQUIRED) from e
        raise ValidationError(f"Invalid field: {loc[0]}") from e

    if not chat.prompt.strip():
        raise ValidationError(PROMPT_REQUIRED)
    return chat


async def read_chat_request(request: Request, settings: Settings) -> Tuple[ChatRequest, Optional[UploadedFile]]:
    """
    Accepts JSON (`prompt`, `model`) or multipart (`prompt`, `model`, `file`).
    The upload's spooled temp file is closed before returning, on every path.
    """
    ctype = (request.headers.get("content-type") or "").lower()

    if ctype.startswith("application/json"):
        try:
            raw = await request.json()
        except ValueError as e:
            raise ValidationError("Request body must be valid JSON") from e
        if not isinstance(raw, dict):
            raise ValidationError("Request body must be a JSON object")
        return parse_chat_fields(raw), None

    form = await request.form()
    try:
        fields = {k: v for k, v in form.items() if isinstance(v, str)}
        chat = parse_chat_fields(fields)

        upload = None
        f = form.get("file")
        if isinstance(f, UploadFile):
            upload = await read_upload(f, settings.max_upload_bytes)
        return chat, upload
    finally:
        await form.close()


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate_required()

    registry = ProviderRegistry(settings, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[startup] environment=%s", settings.environment)
        logger.info("[startup] allowed origins: %s", ", ".join(settings.allowed_origins) or "ALL")
        logger.info("[startup] default model: %s", registry.default_selector)
        logger.info("[startup] stream relay mode: %s", settings.relay_mode)
        yield

    app = FastAPI(title="AI Chat Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry

    if settings.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        app.add_middleware(OriginAllowListMiddleware, allowed_origins=settings.allowed_origins)
    else:
        logger.warning("[startup] ALLOWED_ORIGINS is not set, allowing all origins")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error("[api] %s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("[api] %s %s rejected (%d): %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    async def prepare(request: Request, streaming: bool) -> Tuple[Resolution, str]:
        chat, upload = await read_chat_request(request, settings)

        resolution = registry.resolve(chat.model)
        adapter = resolution.adapter
        if streaming and not adapter.supports_streaming:
            raise ValidationError(f"Model '{resolution.selector}' does not support streaming")

        if adapter.uses_original_prompt:
            if upload is not None:
                logger.info("[chat] %s ignores attachments, dropping %s", resolution.selector, upload.filename)
            return resolution, chat.prompt

        extracted = await extract_text(upload, max_chars=settings.max_file_chars)
        return resolution, compose_prompt(chat.prompt, extracted)

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.environment,
        }

    @app.get("/api/models")
    async def models():
        return {
            "providers": registry.names,
            "default": registry.default_selector,
            "configured": sorted(settings.api_keys),
        }

    @app.post("/api/chat")
    async def chat(request: Request):
        try:
            resolution, prompt = await prepare(request, streaming=False)
            reply = await resolution.adapter.invoke(prompt, resolution.model_id, streaming=False)
        except (GatewayError, StarletteHTTPException):
            raise
        except Exception as e:
            logger.exception("[chat] unexpected failure")
            raise GatewayError("AI processing failed") from e

        if reply.image_url:
            return {"imageUrl": reply.image_url, "model": resolution.selector}
        return {"response": reply.text, "model": resolution.selector}

    @app.post("/api/chat-stream")
    async def chat_stream(request: Request):
        try:
            resolution, prompt = await prepare(request, streaming=True)
            upstream = await resolution.adapter.invoke(prompt, resolution.model_id, streaming=True)
        except (GatewayError, StarletteHTTPException):
            raise
        except Exception as e:
            logger.exception("[chat-stream] unexpected failure before streaming")
            raise GatewayError("AI processing failed") from e

        relay = StreamRelay(upstream, cancel=asyncio.Event(), is_disconnected=request.is_disconnected)
        body = relay.passthrough() if settings.relay_mode == "passthrough" else relay.reframed()
        logger.info("[chat-stream] relaying %s (%s)", resolution.selector, settings.relay_mode)
        return StreamingResponse(body, media_type="text/event-stream", headers=SSE_HEADERS)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
