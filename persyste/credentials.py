"""
Bearer token storage.
"""

import json
from pathlib import Path
from typing import Protocol

from loguru import logger


class CredentialStore(Protocol):
    def get(self) -> str | None: ...

    def set(self, token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryCredentialStore:
    """Token kept for the lifetime of the process."""

    def __init__(self, token: str | None = None):
        self._token = token

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileCredentialStore:
    """Token persisted as a small JSON document."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    def get(self) -> str | None:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable credentials file {self._path}: {e}")
            return None
        token = data.get("authToken") if isinstance(data, dict) else None
        return token or None

    def set(self, token: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"authToken": token}), encoding="utf-8")

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
