"""Per-connection upload protocol.

One ``UploadSession`` runs for every accepted WebSocket. It owns the
heartbeat bookkeeping for that connection, decodes upload requests, writes
them through ``storage`` and records the result in the shared ``Registry``.

Lifecycle: connecting -> active -> (closing ->) terminated. Two loops run
while active: the frame loop (inbound messages, processed strictly in
arrival order) and the heartbeat loop. Whichever finishes first cancels
the other.

Every inbound frame counts as a sign of life. Transport-level ping/pong is
left to the server (uvicorn's ``ws_ping_interval``/``ws_ping_timeout``),
which ASGI applications never see. On top of that a client can opt in to
application probes by sending a ping or pong frame of its own; from then
on it is probed every ``heartbeat_interval`` and dropped once nothing was
heard for ``client_timeout``.

Remote ("pic") uploads are fetched by a detached task so a slow download
never stalls the connection; that task outlives the session if needed and
settles the registry record on its own.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import ServerSettings
from .exceptions import FetchFault, ProtocolFault, StorageFault
from .registry import RecordStatus, Registry
from .storage import Reservation, reserve, write_fetched, write_text


logger = logging.getLogger(__name__)

INVALID_TYPE = "Invalid type!"
INVALID_MESSAGE = "Invalid message!"
STORAGE_ERROR = "Storage error!"

# Close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_UNSUPPORTED_DATA = 1003


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    TERMINATED = "terminated"


class FrameKind(str, enum.Enum):
    TEXT = "text"
    PING = "ping"
    PONG = "pong"
    CLOSE = "close"
    BINARY = "binary"


@dataclass(frozen=True)
class Frame:
    kind: FrameKind
    data: str = ""


class ConnectionClosed(ConnectionError):
    """The transport went away (or refused a send) underneath the session."""


class Connection(Protocol):
    async def accept(self) -> None: ...

    async def receive(self) -> Frame: ...

    async def send_text(self, text: str) -> None: ...

    async def ping(self) -> None: ...

    async def pong(self) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL) -> None: ...


class UploadAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["text", "pic"] = Field(alias="type")
    name: str
    msg: str


class DownloadReply(BaseModel):
    download: str


def decode_action(text: str) -> UploadAction:
    try:
        return UploadAction.model_validate_json(text)
    except ValidationError as exc:
        errors = exc.errors()
        if any(err["loc"] == ("type",) and err["type"] == "literal_error" for err in errors):
            raise ProtocolFault(INVALID_TYPE, str(exc))
        raise ProtocolFault(INVALID_MESSAGE, str(exc))


SpawnFn = Callable[[Coroutine[Any, Any, None]], Any]


class TaskSet:
    """Keeps detached fetch tasks alive until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def fetch_into_registry(
    registry: Registry,
    client: httpx.AsyncClient,
    reservation: Reservation,
    url: str,
    max_bytes: int,
) -> None:
    """Fetch url into a reserved path and settle its registry record.

    Never raises for fetch/storage failures; the record ends up failed
    instead. Cancellation (server shutdown) also leaves it failed.
    """
    status = RecordStatus.FAILED
    try:
        size = await write_fetched(client, reservation.path, url, max_bytes)
        status = RecordStatus.READY
        logger.info("Fetched %d bytes for %s", size, reservation.token)
    except (FetchFault, StorageFault) as exc:
        logger.warning("Fetch for %s failed: %s", reservation.token, exc)
    except Exception:
        logger.exception("Unexpected error fetching %s", reservation.token)
    finally:
        registry.resolve(reservation.token, status)


class UploadSession:
    def __init__(
        self,
        connection: Connection,
        registry: Registry,
        settings: ServerSettings,
        http_client: httpx.AsyncClient,
        spawn: SpawnFn,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self.registry = registry
        self.settings = settings
        self.http_client = http_client
        self._spawn = spawn
        self._clock = clock
        self._send_lock = asyncio.Lock()
        self.session_id = uuid.uuid4().hex[:12]
        self.state = SessionState.CONNECTING
        # Refreshed by every inbound frame.
        self.last_heartbeat = clock()
        # Set once the client speaks ping/pong at the application level.
        self.probing = False

    def download_url(self, token: str) -> str:
        return f"{self.settings.download_host}{token}/"

    def touch(self) -> None:
        self.last_heartbeat = self._clock()

    async def run(self) -> None:
        try:
            await self.connection.accept()
        except ConnectionError as exc:
            logger.info("Session %s: handshake failed: %s", self.session_id, exc)
            self.state = SessionState.TERMINATED
            return

        self.state = SessionState.ACTIVE
        self.touch()
        logger.info("Session %s: connected", self.session_id)

        heartbeat = asyncio.create_task(self._heartbeat_loop())
        frames = asyncio.create_task(self._frame_loop())
        try:
            done, _ = await asyncio.wait({heartbeat, frames}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Session %s: loop crashed", self.session_id, exc_info=task.exception()
                    )
        finally:
            for task in (heartbeat, frames):
                task.cancel()
            await asyncio.gather(heartbeat, frames, return_exceptions=True)
            self.state = SessionState.TERMINATED
            logger.info("Session %s: terminated", self.session_id)

    async def _heartbeat_loop(self) -> None:
        while self.state is SessionState.ACTIVE:
            await asyncio.sleep(self.settings.heartbeat_interval)
            if self.state is not SessionState.ACTIVE:
                return
            if not self.probing:
                continue
            if self._clock() - self.last_heartbeat > self.settings.client_timeout:
                # heartbeat timed out: drop the peer, don't send another probe
                logger.info("Session %s: client heartbeat failed, disconnecting", self.session_id)
                self.state = SessionState.TERMINATED
                await self._close_quietly(CLOSE_GOING_AWAY)
                return
            try:
                async with self._send_lock:
                    await self.connection.ping()
            except ConnectionError as exc:
                logger.info("Session %s: probe failed: %s", self.session_id, exc)
                self.state = SessionState.TERMINATED
                return

    async def _frame_loop(self) -> None:
        while self.state is SessionState.ACTIVE:
            try:
                frame = await self.connection.receive()
                self.touch()
                await self.handle_frame(frame)
            except ConnectionError as exc:
                logger.info("Session %s: transport error: %s", self.session_id, exc)
                self.state = SessionState.TERMINATED
                return

    async def handle_frame(self, frame: Frame) -> None:
        if frame.kind is FrameKind.PING:
            self.probing = True
            self.touch()
            await self._send(self.connection.pong)
        elif frame.kind is FrameKind.PONG:
            self.probing = True
            self.touch()
        elif frame.kind is FrameKind.TEXT:
            await self._send(self.connection.send_text, await self.dispatch(frame.data))
        elif frame.kind is FrameKind.CLOSE:
            self.state = SessionState.CLOSING
            await self._close_quietly(CLOSE_NORMAL)
            self.state = SessionState.TERMINATED
        else:
            logger.info("Session %s: unsupported %s frame, disconnecting", self.session_id, frame.kind.value)
            self.state = SessionState.TERMINATED
            await self._close_quietly(CLOSE_UNSUPPORTED_DATA)

    async def dispatch(self, text: str) -> str:
        """Handle one upload request and return the reply text."""
        try:
            action = decode_action(text)
            return self.store(action).model_dump_json()
        except ProtocolFault as exc:
            logger.info("Session %s: rejected message: %s", self.session_id, exc)
            return exc.reply
        except StorageFault as exc:
            logger.warning("Session %s: storage failure: %s", self.session_id, exc)
            return STORAGE_ERROR

    def store(self, action: UploadAction) -> DownloadReply:
        reservation = reserve(action.name, self.settings.files_root)
        if action.kind == "text":
            write_text(reservation.path, action.msg)
            self.registry.insert(reservation.token, reservation.path, RecordStatus.READY)
        else:
            # The token is valid from now on; the record stays pending until
            # the fetch settles it.
            self.registry.insert(reservation.token, reservation.path, RecordStatus.PENDING)
            self._spawn(
                fetch_into_registry(
                    self.registry,
                    self.http_client,
                    reservation,
                    action.msg,
                    self.settings.max_fetch_bytes,
                )
            )
        logger.info(
            "Session %s: stored %s upload %r as %s",
            self.session_id,
            action.kind,
            action.name,
            reservation.token,
        )
        return DownloadReply(download=self.download_url(reservation.token))

    async def _send(self, method: Callable[..., Coroutine[Any, Any, None]], *args: Any) -> None:
        async with self._send_lock:
            await method(*args)

    async def _close_quietly(self, code: int) -> None:
        try:
            async with self._send_lock:
                await self.connection.close(code)
        except ConnectionError as exc:
            logger.debug("Session %s: close failed: %s", self.session_id, exc)
