from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name: str, default: Path) -> Path:
    raw = os.environ.get(name)
    if raw and raw.strip():
        return Path(raw).resolve()
    return default.resolve()


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_download_host() -> str:
    host = os.environ.get("WSDROP_DOWNLOAD_HOST", "https://remakeaon.com/").strip()
    if not host.endswith("/"):
        host += "/"
    return host


# Root directory for stored uploads: <FILES_ROOT>/<token>/<name>.
# Override with env var WSDROP_FILES_ROOT.
FILES_ROOT = _env_path("WSDROP_FILES_ROOT", PROJECT_ROOT / "files")

# Static upload page served at "/" (only mounted if the directory exists).
STATIC_DIR = _env_path("WSDROP_STATIC_DIR", PROJECT_ROOT / "static")

# Public prefix used to build download links: <DOWNLOAD_HOST><token>/
DOWNLOAD_HOST = _env_download_host()

# How often heartbeat probes are sent.
HEARTBEAT_INTERVAL_SECONDS = _env_float("WSDROP_HEARTBEAT_INTERVAL_SECONDS", 5)

# How long before lack of client response causes a disconnect.
CLIENT_TIMEOUT_SECONDS = _env_float("WSDROP_CLIENT_TIMEOUT_SECONDS", 10)

# Ceiling for remote "pic" fetches.
MAX_FETCH_BYTES = _env_int("WSDROP_MAX_FETCH_BYTES", 20_000_000)  # 20MB
FETCH_TIMEOUT_SECONDS = _env_float("WSDROP_FETCH_TIMEOUT_SECONDS", 30)

LOG_LEVEL = os.environ.get("WSDROP_LOG_LEVEL", "INFO").upper()

# TLS is optional; when both are set uvicorn terminates TLS itself.
SSL_KEYFILE = os.environ.get("WSDROP_SSL_KEYFILE") or None
SSL_CERTFILE = os.environ.get("WSDROP_SSL_CERTFILE") or None


@dataclass(frozen=True)
class ServerSettings:
    files_root: Path = FILES_ROOT
    download_host: str = DOWNLOAD_HOST
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    client_timeout: float = CLIENT_TIMEOUT_SECONDS
    max_fetch_bytes: int = MAX_FETCH_BYTES
    fetch_timeout: float = FETCH_TIMEOUT_SECONDS
    static_dir: Path = STATIC_DIR

    def __post_init__(self) -> None:
        if self.heartbeat_interval <= 0 or self.client_timeout <= 0:
            raise ValueError("Heartbeat interval and client timeout must be positive")
        if self.client_timeout < self.heartbeat_interval:
            raise ValueError("Client timeout must not be shorter than the heartbeat interval")
        if self.max_fetch_bytes <= 0:
            raise ValueError("max_fetch_bytes must be positive")
        if not self.download_host.endswith("/"):
            # frozen: bypass __setattr__ to normalise once
            object.__setattr__(self, "download_host", self.download_host + "/")

    @classmethod
    def from_env(cls) -> "ServerSettings":
        """Read WSDROP_* from the current environment, not the import-time snapshot."""
        return cls(
            files_root=_env_path("WSDROP_FILES_ROOT", PROJECT_ROOT / "files"),
            download_host=_env_download_host(),
            heartbeat_interval=_env_float("WSDROP_HEARTBEAT_INTERVAL_SECONDS", 5),
            client_timeout=_env_float("WSDROP_CLIENT_TIMEOUT_SECONDS", 10),
            max_fetch_bytes=_env_int("WSDROP_MAX_FETCH_BYTES", 20_000_000),
            fetch_timeout=_env_float("WSDROP_FETCH_TIMEOUT_SECONDS", 30),
            static_dir=_env_path("WSDROP_STATIC_DIR", PROJECT_ROOT / "static"),
        )
