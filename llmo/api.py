"""HTTP surface: /health and /chat (JSON or Server-Sent Events)."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from llmo import __version__
from llmo.engine import ChatEngine, ChatTurn, StreamEvent
from llmo.errors import LLMOError
from llmo.manager import ProcessSupervisor
from llmo.registry import ToolRegistry
from llmo.schemas import ChatRequest, ChatResponse, ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "INVALID_REQUEST": 400,
    "LLM_ERROR": 502,
    "MAX_ITERATIONS_EXCEEDED": 500,
}


def error_response(error: LLMOError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(error.code, 500),
        content={"error": error.to_dict()},
    )


async def sse_events(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Render engine events as Server-Sent Events."""
    async for event in events:
        if event.type == "chunk":
            yield f"data: {json.dumps({'content': event.content})}\n\n"
        elif event.type == "done":
            yield "data: [DONE]\n\n"
        elif event.type == "error":
            yield f"event: error\ndata: {json.dumps({'error': event.error})}\n\n"


def create_app(
    engine: ChatEngine,
    supervisor: ProcessSupervisor,
    registry: ToolRegistry,
) -> FastAPI:
    app = FastAPI(
        title="LLMO",
        description="Tool-augmented chat broker for stdio MCP providers",
        version=__version__,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        states = supervisor.states()
        healthy = all(state == "ready" for state in states.values())
        return HealthResponse(
            status="ok" if healthy else "degraded",
            providers=states,
            tools=len(registry),
        )

    @app.post(
        "/chat",
        response_model=ChatResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    )
    async def chat(request: ChatRequest):
        turn = ChatTurn(
            model=request.model,
            messages=[m.model_dump() for m in request.messages],
            stream=request.stream,
        )

        if turn.stream:
            return StreamingResponse(
                sse_events(engine.stream(turn)),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache"},
            )

        try:
            result = await engine.run(turn)
        except LLMOError as e:
            logger.error(f"Chat request failed: {e.code}: {e.message}")
            return error_response(e)
        return result.to_dict()

    return app
