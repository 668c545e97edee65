from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

import httpx

from .config import FILES_ROOT, MAX_FETCH_BYTES
from .exceptions import FetchFault, ProtocolFault, StorageFault
from .security import is_safe_basename, new_token, safe_join


logger = logging.getLogger(__name__)

_FETCH_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class Reservation:
    token: str
    path: Path


def reserve(name: str, root: Path = FILES_ROOT) -> Reservation:
    """Allocate <root>/<token>/<name> and create it as an empty file.

    Every upload gets its own token directory, so two clients uploading
    "a.txt" at the same time never collide.
    """
    if not is_safe_basename(name):
        raise ProtocolFault("Invalid name!", f"unsafe file name {name!r}")

    token = new_token()
    try:
        token_dir = safe_join(root, token)
        path = safe_join(token_dir, name)
    except ValueError:
        raise ProtocolFault("Invalid name!", f"unsafe file name {name!r}")

    try:
        token_dir.mkdir(parents=True, exist_ok=False)
    except OSError as exc:
        raise StorageFault(f"couldn't create {token_dir}: {exc}") from exc
    try:
        path.touch(exist_ok=False)
    except OSError as exc:
        # Don't leave an empty token directory behind.
        shutil.rmtree(token_dir, ignore_errors=True)
        raise StorageFault(f"couldn't create {path}: {exc}") from exc
    return Reservation(token=token, path=path)


def write_text(path: Path, content: str) -> None:
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise StorageFault(f"couldn't write {path}: {exc}") from exc


def _check_fetch_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise FetchFault(f"invalid source url {url!r}") from exc
    if parsed.scheme not in _FETCH_SCHEMES or not parsed.host:
        raise FetchFault(f"unsupported source url {url!r}")


async def fetch_bytes(client: httpx.AsyncClient, url: str, max_bytes: int = MAX_FETCH_BYTES) -> bytes:
    """Download url into memory, refusing anything larger than max_bytes.

    The body is streamed so an oversized response is abandoned as soon as it
    crosses the ceiling instead of being buffered whole.
    """
    _check_fetch_url(url)
    buf = bytearray()
    try:
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise FetchFault(f"{url} answered {response.status_code}")
            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > max_bytes:
                raise FetchFault(f"{url} declares {declared} bytes, limit is {max_bytes}")
            async for chunk in response.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise FetchFault(f"{url} exceeds {max_bytes} bytes")
    except httpx.HTTPError as exc:
        raise FetchFault(f"request to {url} failed: {exc!r}") from exc
    return bytes(buf)


async def write_fetched(
    client: httpx.AsyncClient,
    path: Path,
    url: str,
    max_bytes: int = MAX_FETCH_BYTES,
) -> int:
    """Fetch url and store the body at path. Returns the number of bytes written."""
    logger.debug("Fetching %s into %s", url, path)
    data = await fetch_bytes(client, url, max_bytes)
    try:
        path.write_bytes(data)
    except OSError as exc:
        raise StorageFault(f"couldn't write {path}: {exc}") from exc
    logger.debug("Wrote %d bytes to %s", len(data), path)
    return len(data)
