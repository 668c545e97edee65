from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx
import pytest

from wsdrop_backend.config import ServerSettings
from wsdrop_backend.session import ConnectionClosed, Frame, FrameKind

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
DOWNLOAD_HOST = "https://files.example/"


def remote_handler(request: httpx.Request) -> httpx.Response:
    """Stand-in for the internet: a few known URLs, everything else 404."""
    if request.url.path == "/cat.png":
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
    if request.url.path == "/huge.bin":
        return httpx.Response(200, content=b"x" * 2048)
    if request.url.path == "/boom":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(404)


def make_settings(root: Path, **overrides) -> ServerSettings:
    values = dict(
        files_root=root / "files",
        download_host=DOWNLOAD_HOST,
        heartbeat_interval=30.0,
        client_timeout=60.0,
        max_fetch_bytes=1024,
        fetch_timeout=5.0,
        static_dir=root / "static",
    )
    values.update(overrides)
    return ServerSettings(**values)


@pytest.fixture()
def restore_logging():
    """Put the root and uvicorn loggers back the way the test found them."""
    loggers = [logging.getLogger(name) for name in ("", "uvicorn", "uvicorn.access", "uvicorn.error")]
    saved = [(lg.handlers[:], lg.level, lg.propagate) for lg in loggers]
    yield
    for lg, (handlers, level, propagate) in zip(loggers, saved):
        lg.handlers = handlers
        lg.setLevel(level)
        lg.propagate = propagate


@pytest.fixture()
def settings(tmp_path: Path) -> ServerSettings:
    return make_settings(tmp_path)


class FakeConnection:
    """In-memory Connection: tests push frames in, inspect what was sent out."""

    def __init__(self, auto_pong: bool = False) -> None:
        self.inbox: asyncio.Queue[Optional[Frame]] = asyncio.Queue()
        self.auto_pong = auto_pong
        self.accepted = False
        self.sent: list[str] = []
        self.pings = 0
        self.pongs = 0
        self.closed_with: Optional[int] = None

    def push_text(self, text: str) -> None:
        self.inbox.put_nowait(Frame(FrameKind.TEXT, text))

    def push(self, kind: FrameKind) -> None:
        self.inbox.put_nowait(Frame(kind))

    def vanish(self) -> None:
        self.inbox.put_nowait(None)

    async def accept(self) -> None:
        self.accepted = True

    async def receive(self) -> Frame:
        frame = await self.inbox.get()
        if frame is None:
            raise ConnectionClosed("peer vanished")
        return frame

    async def send_text(self, text: str) -> None:
        if self.closed_with is not None:
            raise ConnectionClosed("already closed")
        self.sent.append(text)

    async def ping(self) -> None:
        self.pings += 1
        if self.auto_pong:
            self.push(FrameKind.PONG)

    async def pong(self) -> None:
        self.pongs += 1

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
