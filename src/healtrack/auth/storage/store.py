"""Durable key-value storage for credential fields.

The store knows nothing about providers or refresh flows. Only the session
manager writes to it; adapters never touch it directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from healtrack.auth.models.credentials import Credential, CredentialType
from healtrack.auth.models.errors import StorageError
from healtrack.auth.storage.keys import CREDENTIAL_KEYS

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Async key-value store for string values.

    ``read`` and ``remove`` never raise. ``write`` raises StorageError when
    the medium rejects a value.
    """

    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Return the stored value, or None if missing or unreadable."""
        ...

    @abstractmethod
    async def write_many(self, values: dict[str, str | None]) -> None:
        """Apply several writes together. A None value removes the key.

        Raises:
            StorageError: If the medium rejects the batch
        """
        ...

    async def write(self, key: str, value: str) -> None:
        """Store a single string value.

        Raises:
            StorageError: If the value is not a string or the write fails
        """
        if not isinstance(value, str):
            raise StorageError(
                f"Cannot store non-string value for {key}: {type(value).__name__}",
                failed_keys=[key],
            )
        await self.write_many({key: value})

    async def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is a no-op."""
        try:
            await self.write_many({key: None})
        except StorageError as e:
            logger.warning(f"Failed to remove {key} from credential store: {e}")

    async def clear_all(self, keys: list[str]) -> None:
        """Remove every key in ``keys``.

        Raises:
            StorageError: Naming every key that could not be removed
        """
        try:
            await self.write_many({key: None for key in keys})
            return
        except StorageError:
            logger.debug("Batch clear failed, falling back to per-key removal")

        failed: list[str] = []
        for key in keys:
            try:
                await self.write_many({key: None})
            except StorageError:
                failed.append(key)

        if failed:
            raise StorageError(
                f"Failed to clear {len(failed)} session key(s)", failed_keys=failed
            )

    # ================================
    # Credential helpers
    # ================================

    async def read_credential(self, credential_type: CredentialType) -> Credential | None:
        """Rebuild a credential from its stored fields.

        Missing or corrupt fields yield None rather than an error.
        """
        keys = CREDENTIAL_KEYS[credential_type]
        token = await self.read(keys.token)
        issued_at_raw = await self.read(keys.issued_at)
        if not token or issued_at_raw is None:
            return None

        expires_at_raw = await self.read(keys.expires_at)
        refresh_token = await self.read(keys.refresh_token) if keys.refresh_token else None

        try:
            return Credential(
                type=credential_type,
                token=token,
                issued_at=float(issued_at_raw),
                expires_at=float(expires_at_raw) if expires_at_raw is not None else None,
                refresh_token=refresh_token or None,
            )
        except ValueError as e:
            logger.warning(f"Discarding corrupt stored {credential_type.value} credential: {e}")
            return None

    async def write_credential(self, credential: Credential) -> None:
        """Persist every field of a credential in one batch.

        Raises:
            StorageError: If the batch is rejected
        """
        keys = CREDENTIAL_KEYS[credential.type]
        values: dict[str, str | None] = {
            keys.token: credential.token,
            keys.issued_at: repr(credential.issued_at),
            keys.expires_at: (
                repr(credential.expires_at) if credential.expires_at is not None else None
            ),
        }
        if keys.refresh_token:
            values[keys.refresh_token] = credential.refresh_token
        await self.write_many(values)

    async def remove_credential(self, credential_type: CredentialType) -> None:
        """Remove every stored field of one credential type."""
        try:
            await self.write_many({key: None for key in CREDENTIAL_KEYS[credential_type].all()})
        except StorageError as e:
            logger.warning(f"Failed to remove stored {credential_type.value} credential: {e}")


class MemoryCredentialStore(CredentialStore):
    """Process-local store. Used for tests and for degraded memory-only mode."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    async def read(self, key: str) -> str | None:
        return self._data.get(key)

    async def write_many(self, values: dict[str, str | None]) -> None:
        for key, value in values.items():
            if value is not None and not isinstance(value, str):
                raise StorageError(
                    f"Cannot store non-string value for {key}", failed_keys=[key]
                )
        for key, value in values.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class JsonFileCredentialStore(CredentialStore):
    """Store backed by a single JSON document on disk.

    Every batch is written to a temporary file and renamed over the original,
    so a crash leaves either the old or the new document, never a mix.
    File I/O runs in a worker thread to keep the event loop responsive.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def read(self, key: str) -> str | None:
        try:
            data = await asyncio.to_thread(self._load)
        except (OSError, ValueError) as e:
            logger.warning(f"Credential store unreadable at {self.path}: {e}")
            return None
        value = data.get(key)
        return value if isinstance(value, str) else None

    async def write_many(self, values: dict[str, str | None]) -> None:
        for key, value in values.items():
            if value is not None and not isinstance(value, str):
                raise StorageError(
                    f"Cannot store non-string value for {key}", failed_keys=[key]
                )

        async with self._lock:
            try:
                await asyncio.to_thread(self._apply, values)
            except (OSError, TypeError, ValueError) as e:
                raise StorageError(
                    f"Failed to write credential store at {self.path}: {e}",
                    failed_keys=list(values),
                ) from e

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("credential store root must be a JSON object")
        return data

    def _apply(self, values: dict[str, str | None]) -> None:
        try:
            data = self._load()
        except ValueError:
            logger.warning(f"Overwriting corrupt credential store at {self.path}")
            data = {}

        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
