from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

from .exceptions import NotFoundFault, NotReadyFault
from .registry import RecordStatus, Registry
from .security import normalize_token


logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class StoredFile:
    name: str
    data: bytes


def retrieve(registry: Registry, token: str) -> StoredFile:
    """Resolve token to the stored bytes and original file name.

    Raises NotFoundFault (or NotReadyFault while a fetch is still running)
    for every kind of absence; never touches registry state.
    """
    try:
        token = normalize_token(token)
    except ValueError:
        raise NotFoundFault(str(token), "malformed token")

    record = registry.lookup(token)
    if record is None:
        raise NotFoundFault(token)
    if record.status is RecordStatus.PENDING:
        raise NotReadyFault(token)
    if record.status is RecordStatus.FAILED:
        raise NotFoundFault(token, "upload failed")

    path = record.path
    if not path.is_file():
        raise NotFoundFault(token, "file missing on disk")
    try:
        data = path.read_bytes()
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        raise NotFoundFault(token, "file unreadable")
    return StoredFile(name=path.name, data=data)


def content_disposition(name: str) -> str:
    """Build an attachment header, with an RFC 5987 fallback for non-ASCII names."""
    name = _CONTROL_CHARS.sub("_", name)
    ascii_name = name.encode("ascii", "replace").decode("ascii").replace('"', "_").replace("?", "_")
    header = f'attachment; filename="{ascii_name}"'
    if ascii_name != name:
        header += f"; filename*=UTF-8''{quote(name, safe='')}"
    return header
