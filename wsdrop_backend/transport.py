from __future__ import annotations

import json

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .session import CLOSE_NORMAL, ConnectionClosed, Frame, FrameKind


# ASGI hides WebSocket control frames from the application; uvicorn answers
# and enforces those. Application probes travel as tiny JSON messages on the
# text channel, for clients that opt in by sending one.
PING_MESSAGE = json.dumps({"type": "ping"})
PONG_MESSAGE = json.dumps({"type": "pong"})

_TRANSPORT_ERRORS = (RuntimeError, OSError, WebSocketDisconnect)


def classify_text(text: str) -> Frame:
    """Map a text message to a liveness frame or an ordinary data frame."""
    if len(text) < 64 and '"type"' in text:
        try:
            payload = json.loads(text)
        except ValueError:
            return Frame(FrameKind.TEXT, text)
        if isinstance(payload, dict) and list(payload) == ["type"]:
            if payload["type"] == "ping":
                return Frame(FrameKind.PING)
            if payload["type"] == "pong":
                return Frame(FrameKind.PONG)
    return Frame(FrameKind.TEXT, text)


class StarletteConnection:
    """Adapts a Starlette/FastAPI WebSocket to the session ``Connection`` protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._peer_closed = False

    async def accept(self) -> None:
        try:
            await self.websocket.accept()
        except _TRANSPORT_ERRORS as exc:
            raise ConnectionClosed(str(exc)) from exc

    async def receive(self) -> Frame:
        try:
            message = await self.websocket.receive()
        except _TRANSPORT_ERRORS as exc:
            raise ConnectionClosed(str(exc)) from exc

        if message["type"] == "websocket.disconnect":
            self._peer_closed = True
            return Frame(FrameKind.CLOSE, str(message.get("code", CLOSE_NORMAL)))
        if message.get("text") is not None:
            return classify_text(message["text"])
        if message.get("bytes") is not None:
            return Frame(FrameKind.BINARY)
        raise ConnectionClosed(f"unexpected ASGI message {message['type']!r}")

    async def send_text(self, text: str) -> None:
        try:
            await self.websocket.send_text(text)
        except _TRANSPORT_ERRORS as exc:
            raise ConnectionClosed(str(exc)) from exc

    async def ping(self) -> None:
        await self.send_text(PING_MESSAGE)

    async def pong(self) -> None:
        await self.send_text(PONG_MESSAGE)

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        # A disconnect from the peer has already been answered by the server.
        if self._peer_closed or self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code)
        except _TRANSPORT_ERRORS as exc:
            raise ConnectionClosed(str(exc)) from exc
