"""
Commitment store.

Exactly one CommitmentRecord per identity. The store owns record storage;
other components only read transient copies. An absent record is a normal
state before the first deposit and is reported as None, while a broken
transport or an unreadable blob raises StoreError.

Confidentiality at rest is delegated: pass a RecordCipher to encrypt what
the transport sees. Exports are always the plaintext persisted format so
they can serve as the user's backup.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from .config import STORAGE_KEY_PREFIX
from .exceptions import StoreError, UserInputError
from .fields import normalize_address
from .types import CommitmentRecord

logger = logging.getLogger(__name__)


class StorageTransport(Protocol):
    def read(self, key: str) -> Optional[bytes]:
        ...

    def write(self, key: str, data: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class RecordCipher(Protocol):
    def encrypt(self, data: bytes) -> bytes:
        ...

    def decrypt(self, token: bytes) -> bytes:
        ...


class MemoryTransport:
    def __init__(self) -> None:
        self._items: Dict[str, bytes] = {}

    def read(self, key: str) -> Optional[bytes]:
        return self._items.get(key)

    def write(self, key: str, data: bytes) -> None:
        self._items[key] = bytes(data)

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list:
        return sorted(self._items)


class FileTransport:
    """One file per key inside a directory; writes replace atomically."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StoreError(f"failed to read {path}: {exc}") from exc

    def write(self, key: str, data: bytes) -> None:
        tmp_name = None
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-")
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, self._path(key))
        except OSError as exc:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise StoreError(f"failed to write {self._path(key)}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StoreError(f"failed to delete {self._path(key)}: {exc}") from exc


class FernetCipher:
    """RecordCipher backed by cryptography's Fernet (AES-128-CBC + HMAC)."""

    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    def encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt(self, token: bytes) -> bytes:
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as exc:
            raise StoreError("stored record could not be decrypted") from exc


def storage_key(identity: str) -> str:
    try:
        return f"{STORAGE_KEY_PREFIX}_{normalize_address(identity)}"
    except UserInputError as exc:
        raise UserInputError(f"invalid identity: {identity!r}") from exc


def _encode(record: CommitmentRecord) -> bytes:
    return json.dumps(record.to_dict(), sort_keys=True).encode("utf-8")


def _decode(blob: bytes) -> CommitmentRecord:
    try:
        data = json.loads(blob.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StoreError(f"stored record is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise StoreError("stored record must be a JSON object")
    return CommitmentRecord.from_dict(data)


class CommitmentStore:
    """
    Persist one commitment record per identity.

    Example:
        >>> store = CommitmentStore(FileTransport("~/.shielded-lending"))
        >>> store.save(address, record)
        >>> store.load(address) == record
        True
    """

    def __init__(
        self, transport: StorageTransport, cipher: Optional[RecordCipher] = None
    ) -> None:
        self._transport = transport
        self._cipher = cipher

    def save(self, identity: str, record: CommitmentRecord) -> None:
        """Write or overwrite the record for identity."""
        if normalize_address(identity) != record.owner:
            raise UserInputError("record owner does not match identity")
        blob = _encode(record)
        if self._cipher is not None:
            blob = self._cipher.encrypt(blob)
        self._transport.write(storage_key(identity), blob)
        logger.debug("saved commitment record for %s", record.owner)

    def _read_plain(self, identity: str) -> Optional[bytes]:
        blob = self._transport.read(storage_key(identity))
        if blob is None:
            return None
        if self._cipher is not None:
            blob = self._cipher.decrypt(blob)
        return blob

    def load(self, identity: str) -> Optional[CommitmentRecord]:
        """Return the stored record, or None before the first deposit."""
        blob = self._read_plain(identity)
        if blob is None:
            return None
        return _decode(blob)

    def export(self, identity: str) -> Optional[bytes]:
        """Plaintext JSON backup of the record, or None if absent."""
        blob = self._read_plain(identity)
        if blob is None:
            return None
        # Re-encode so the backup is canonical even for legacy files
        return json.dumps(_decode(blob).to_dict(), indent=2, sort_keys=True).encode(
            "utf-8"
        )

    def import_blob(self, identity: str, blob: bytes) -> CommitmentRecord:
        """
        Restore a record from an export.

        Raises:
            StoreError: If the blob is not a valid record
            UserInputError: If the record belongs to another identity
        """
        record = _decode(blob)
        self.save(identity, record)
        return record

    def delete(self, identity: str) -> None:
        self._transport.delete(storage_key(identity))
        logger.debug("deleted commitment record for %s", normalize_address(identity))
