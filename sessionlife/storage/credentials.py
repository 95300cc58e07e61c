from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from redis import Redis
from redis.exceptions import RedisError

from sessionlife.logging import get_logger
from sessionlife.storage.errors import CredentialStoreError
from sessionlife.storage.models import Credential

logger = get_logger(__name__)


class CredentialStore:
    """Holds the single current credential.

    Writes are whole-value replacements; the Keep-Alive Scheduler replaces,
    the Expiration Handler clears, everything else only reads.
    """

    def __init__(self) -> None:
        self._current: Optional[Credential] = None

    def current(self) -> Optional[Credential]:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version if self._current else 0

    def replace(self, credential: Credential) -> None:
        self._current = credential
        self._persist(credential)

    def clear(self) -> None:
        self._current = None
        self._erase()

    def _persist(self, credential: Credential) -> None:
        pass

    def _erase(self) -> None:
        pass


class MemoryCredentialStore(CredentialStore):
    """Process-local store; nothing survives a restart."""


class FileCredentialStore(CredentialStore):
    """Keeps the credential in a JSON file so a reload can resume the session."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._current = self._load()

    def _load(self) -> Optional[Credential]:
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("credential_file_unreadable", path=str(self.path), error=str(exc))
            return None
        try:
            return Credential.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("credential_file_invalid", path=str(self.path), error=str(exc))
            return None

    def _persist(self, credential: Credential) -> None:
        payload = json.dumps(credential.to_dict())
        try:
            # Atomic write: temp file in the same directory, then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".credential_", suffix=".tmp"
            )
            try:
                os.write(fd, payload.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise CredentialStoreError(
                "failed to persist credential", {"path": str(self.path), "error": str(exc)}
            ) from exc

    def _erase(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise CredentialStoreError(
                "failed to remove credential", {"path": str(self.path), "error": str(exc)}
            ) from exc


class RedisCredentialStore(CredentialStore):
    """Keeps the credential under a single Redis key."""

    def __init__(
        self,
        client: Any = None,
        *,
        redis_url: Optional[str] = None,
        key: str = "sessionlife:credential",
        ttl_seconds: Optional[int] = None,
        socket_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        if client is None:
            if not redis_url:
                raise ValueError("RedisCredentialStore needs a client or redis_url")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._current = self._load()

    def _load(self) -> Optional[Credential]:
        try:
            raw = self.client.get(self.key)
        except RedisError as exc:
            raise CredentialStoreError(
                "failed to read credential", {"key": self.key, "error": str(exc)}
            ) from exc
        if not raw:
            return None
        try:
            return Credential.from_dict(json.loads(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("credential_redis_invalid", key=self.key, error=str(exc))
            return None

    def _persist(self, credential: Credential) -> None:
        try:
            self.client.set(self.key, json.dumps(credential.to_dict()), ex=self.ttl_seconds)
        except RedisError as exc:
            raise CredentialStoreError(
                "failed to persist credential", {"key": self.key, "error": str(exc)}
            ) from exc

    def _erase(self) -> None:
        try:
            self.client.delete(self.key)
        except RedisError as exc:
            raise CredentialStoreError(
                "failed to remove credential", {"key": self.key, "error": str(exc)}
            ) from exc
