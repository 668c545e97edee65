from __future__ import annotations

import re
import uuid
from pathlib import Path


_TOKEN_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$")


def new_token() -> str:
    """Return a fresh storage token (canonical UUID4 string, 122 random bits)."""
    return str(uuid.uuid4())


def normalize_token(token: str) -> str:
    """Validate and normalize a storage token.

    Tokens are capability handles for stored files; anyone holding one can
    download the artifact, so only canonical UUID4 strings are accepted.
    """
    if not isinstance(token, str):
        raise ValueError("Invalid token")
    token = token.strip()
    if not _TOKEN_RE.match(token):
        # uuid.UUID also accepts braces, urn: prefixes and so on; we don't.
        raise ValueError("Invalid token")
    return str(uuid.UUID(token))


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in (".", ".."):
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name:
        return False
    # Names end up in response headers; CR/LF and friends never belong there.
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in name):
        return False
    return True


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir."""
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved
