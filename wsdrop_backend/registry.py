from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, replace
from pathlib import Path


class RecordStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class StorageRecord:
    token: str
    path: Path
    status: RecordStatus = RecordStatus.READY


class Registry:
    """Process-local map of issued token -> stored file.

    Shared by every upload session (event loop) and the download route
    (threadpool), so all access goes through one lock. The lock only covers
    the dict operation itself, never any file or network I/O.

    Entries are append-only: a token is inserted once and its path never
    changes. The only allowed update is a pending record settling to
    ready or failed once its background fetch finishes.
    """

    def __init__(self) -> None:
        self._records: dict[str, StorageRecord] = {}
        self._lock = threading.Lock()

    def insert(self, token: str, path: Path, status: RecordStatus = RecordStatus.READY) -> StorageRecord:
        record = StorageRecord(token=token, path=path, status=status)
        with self._lock:
            if token in self._records:
                raise KeyError(f"token already registered: {token}")
            self._records[token] = record
        return record

    def resolve(self, token: str, status: RecordStatus) -> StorageRecord:
        """Settle a pending record to ready or failed."""
        if status is RecordStatus.PENDING:
            raise ValueError("A record can only be resolved to ready or failed")
        with self._lock:
            current = self._records[token]
            if current.status is not RecordStatus.PENDING:
                raise ValueError(f"{token} already {current.status.value}")
            record = replace(current, status=status)
            self._records[token] = record
        return record

    def lookup(self, token: str) -> StorageRecord | None:
        with self._lock:
            return self._records.get(token)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
