"""
HTTP server for CasaLibreConversationEntity.

Endpoints
---------
POST   /api/chat                 Run one turn; reply + full trace (buffered).
POST   /api/chat-stream          Run one turn; trace events as server-sent events.
DELETE /api/chat?threadId=...    Clear history for a thread.
DELETE /api/chat/{thread_id}     Clear history for a thread.
GET    /api/config               Model and tool configuration.
GET    /health                   Health / readiness check.

Streaming frames are ``data: <json>\\n\\n``, one trace event per frame.  The
last frame of every stream is a ``DONE`` or ``ERROR`` event.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from casalibre.conversation.entity import (
    CasaLibreConversationEntity,
    ConversationInput,
    InputValidationError,
)
from casalibre.homeassistant.resolver import EntityRefresher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """Body for POST /api/chat and /api/chat-stream.

    ``message`` is typed loosely so a missing or non-string message reaches
    the entity's validation and is answered with 400 rather than 422.
    """

    model_config = ConfigDict(populate_by_name=True)

    message: Any = Field(default=None, description="The user's message.")
    thread_id: Any = Field(
        default=None,
        alias="threadId",
        description="Thread id for multi-turn context. Omit to start a new thread.",
    )


class HealthResponse(BaseModel):
    status: str
    entity_name: str
    active_sessions: int | None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_conversation_app(
    entity: CasaLibreConversationEntity,
    refresher: EntityRefresher | None = None,
    model_info: dict[str, Any] | None = None,
) -> FastAPI:
    """Create a FastAPI application wrapping *entity*.

    Args:
        entity: A fully initialised conversation entity.
        refresher: Started on application startup and stopped on shutdown.
        model_info: Extra fields for ``GET /api/config`` (model, temperature).

    Returns:
        A configured ``FastAPI`` application ready to be served or used in
        tests via ``httpx.AsyncClient(transport=ASGITransport(app=app))``.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if refresher is not None:
            await refresher.start()
        try:
            yield
        finally:
            if refresher is not None:
                await refresher.stop()

    app = FastAPI(
        title="La Casa Libre Agent API",
        description="Tool-calling home automation agent with replayable traces.",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        store = entity.store
        return HealthResponse(
            status="ok",
            entity_name=entity.name,
            active_sessions=len(store) if hasattr(store, "__len__") else None,
        )

    @app.get("/api/config")
    async def config() -> dict[str, Any]:
        data: dict[str, Any] = {
            "provider": "OpenAI-compatible",
            "framework": "casalibre AgenticLoop",
            "max_iterations": entity.max_iterations,
            "tools": {
                "names": [t.name for t in entity.tools],
                "total": len(entity.tools),
            },
            "features": ["Real-time streaming (SSE)", "Entity caching"],
        }
        data.update(model_info or {})
        if refresher is not None:
            data["entity_cache"] = refresher.resolver.stats()
        return data

    @app.post("/api/chat")
    async def chat(body: ChatRequest) -> Any:
        """Run one turn and return the reply with its full trace.

        Failed runs answer 500 with ``{error, trace, threadId}``.
        """
        user_input = ConversationInput(text=body.message, conversation_id=body.thread_id)
        try:
            result = await entity.async_process(user_input)
        except InputValidationError as exc:
            return _error(400, str(exc))

        trace = [event.to_dict() for event in result.trace]
        if not result.success:
            return JSONResponse(
                status_code=500,
                content={
                    "error": result.error,
                    "trace": trace,
                    "threadId": result.conversation_id,
                },
            )
        return JSONResponse(
            content={
                "reply": result.response_text,
                "trace": trace,
                "threadId": result.conversation_id,
            }
        )

    @app.post("/api/chat-stream")
    async def chat_stream(body: ChatRequest) -> Response:
        """Run one turn and push each trace event as a server-sent event."""
        user_input = ConversationInput(text=body.message, conversation_id=body.thread_id)
        try:
            user_input.conversation_id = entity.validate(user_input)
        except InputValidationError as exc:
            return _error(400, str(exc))

        logger.info("POST /api/chat-stream: thread=%r", user_input.conversation_id)

        async def frames() -> AsyncIterator[str]:
            async for event in entity.async_stream(user_input):
                yield event.to_sse()

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.delete("/api/chat")
    async def clear_thread(thread_id: str | None = Query(default=None, alias="threadId")) -> Any:
        if not thread_id:
            return _error(400, "threadId parameter is required")
        logger.info("DELETE /api/chat threadId=%s", thread_id)
        await entity.clear_history(thread_id)
        return {"success": True, "message": "Thread cleared"}

    @app.delete("/api/chat/{thread_id}", status_code=204)
    async def clear_thread_by_path(thread_id: str) -> None:
        logger.info("DELETE /api/chat/%s", thread_id)
        await entity.clear_history(thread_id)

    return app
