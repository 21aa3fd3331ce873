"""JSON record store — one file per identity per namespace.

Layout under the store root:

    tokens/<identity>.json        CredentialRecord (reconnection token)
    credentials/<identity>.json   ConnectionRecord (connection metadata)

Writes are whole-record overwrites: the record is written to a temp file in
the target directory, fsynced, then os.replace()d into place, so readers see
either the old or the new record and never a partial one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pairlink.errors import NotFound, PersistenceError
from pairlink.sessions.models import ConnectionRecord, CredentialRecord

logger = logging.getLogger(__name__)

TOKENS_NAMESPACE = "tokens"
CREDENTIALS_NAMESPACE = "credentials"

_KEY_RE = re.compile(r"^[0-9A-Za-z_-]{1,64}$")


class JsonFileStore:
    """Durable key-value layer for credential and connection records."""

    def __init__(self, root: Path):
        self._root = Path(root)

    # ── Credential records ────────────────────────────────────────────────

    def put_credential(self, identity: str, record: CredentialRecord) -> None:
        self._write(TOKENS_NAMESPACE, identity, record.to_dict())

    def get_credential(self, identity: str) -> CredentialRecord:
        return _decode(CredentialRecord.from_dict, self._read(TOKENS_NAMESPACE, identity))

    def delete_credential(self, identity: str) -> bool:
        return self._delete(TOKENS_NAMESPACE, identity)

    # ── Connection metadata records ───────────────────────────────────────

    def put_metadata(self, identity: str, record: ConnectionRecord) -> None:
        self._write(CREDENTIALS_NAMESPACE, identity, record.to_dict())

    def get_metadata(self, identity: str) -> ConnectionRecord:
        return _decode(ConnectionRecord.from_dict, self._read(CREDENTIALS_NAMESPACE, identity))

    def delete_metadata(self, identity: str) -> bool:
        return self._delete(CREDENTIALS_NAMESPACE, identity)

    # ── File plumbing ─────────────────────────────────────────────────────

    def _path(self, namespace: str, key: str) -> Path:
        if not _KEY_RE.fullmatch(key or ""):
            raise PersistenceError("Invalid record key", details={"key": key})
        return self._root / namespace / f"{key}.json"

    def _write(self, namespace: str, key: str, data: dict[str, Any]) -> None:
        path = self._path(namespace, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, default=str)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except FileNotFoundError:
                    pass
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error("Record write failed: %s/%s: %s", namespace, key, e)
            raise PersistenceError("Failed to write record", details={"namespace": namespace}) from e
        logger.debug("Record written: %s/%s", namespace, key)

    def _read(self, namespace: str, key: str) -> dict[str, Any]:
        path = self._path(namespace, key)
        try:
            with path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            raise NotFound("Record not found", details={"namespace": namespace, "key": key}) from None
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Record read failed: %s/%s: %s", namespace, key, e)
            raise PersistenceError("Failed to read record", details={"namespace": namespace}) from e
        if not isinstance(data, dict):
            raise PersistenceError("Malformed record", details={"namespace": namespace})
        return data

    def _delete(self, namespace: str, key: str) -> bool:
        path = self._path(namespace, key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError("Failed to delete record", details={"namespace": namespace}) from e


def _decode(factory, data: dict[str, Any]):
    try:
        return factory(data)
    except (KeyError, TypeError) as e:
        raise PersistenceError("Malformed record", details={"missing": str(e)}) from e
