# api/actions.py
from typing import Any, AsyncIterator

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.concurrency import run_in_threadpool

from api.security import require_session
from common.logging_setup import get_logger
from streaming.turn_stream import TurnStream

log = get_logger("api.actions")

router = APIRouter(prefix="/api", tags=["actions"])

NDJSON = "application/x-ndjson"
# how often the response loop checks whether the client is still there
POLL_INTERVAL = 0.25


async def pump(request: Request, stream: TurnStream, poll_interval: float = POLL_INTERVAL) -> AsyncIterator[bytes]:
    """Drain a turn stream into the HTTP response.

    When the client goes away the stream is detached: the worker keeps
    draining the backend (or aborts) on its own and still records the turn.
    """
    try:
        while True:
            item = await run_in_threadpool(stream.poll, poll_interval)
            if item is None:
                if await request.is_disconnected():
                    log.info("Client disconnected from stream %s", stream.id)
                    return
                continue
            if item == b"":
                return
            yield item
    finally:
        stream.detach()


def _stream_response(request: Request, stream: TurnStream) -> StreamingResponse:
    headers = {"Cache-Control": "no-cache", "X-Stream-Id": stream.id}
    if stream.chat_id:
        headers["X-Chat-Id"] = stream.chat_id
    return StreamingResponse(pump(request, stream), media_type=NDJSON, headers=headers)


@router.post("/ollama-action")
def ollama_action(request: Request, payload: Any = Body(...), session_id: str = Depends(require_session)):
    result = request.app.state.dispatcher.handle(session_id, payload)
    if isinstance(result, TurnStream):
        return _stream_response(request, result)
    return JSONResponse(result)


@router.get("/models")
def list_models(request: Request, session_id: str = Depends(require_session)):
    return request.app.state.client.list_models()


@router.post("/streams/{stream_id}/cancel")
def cancel_stream(stream_id: str, request: Request, session_id: str = Depends(require_session)):
    stream = request.app.state.streams.get(session_id, stream_id)
    stream.cancel()
    return {"ok": True, "stream_id": stream.id}
