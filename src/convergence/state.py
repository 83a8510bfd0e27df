"""State store for last-applied resource records.

The store is the engine's memory between runs: for every resource it holds
the provider-assigned id, the hash of the properties that were applied and
the outputs the provider returned. The planner reads it, only the apply
executor writes it, and only after the provider confirmed the call.

Persistence is a single JSON document written atomically (temp file +
rename) after every mutation so a crash mid-apply never loses confirmed
records. The serial increases with every write.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .errors import ValidationError
from .identifiers import NodeId
from .naming import HASH_VERSION

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class RemoteRecord(BaseModel):
    """Last-applied snapshot of one resource."""

    model_config = {"extra": "ignore"}

    resource_type: str
    name: str
    remote_id: str
    api_version: str
    property_hash: str
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    applied_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Set by drift detection for the current run only; never persisted
    drifted: bool = Field(False, exclude=True)

    @property
    def node_id(self) -> NodeId:
        return NodeId(self.resource_type, self.name)


class StateDocument(BaseModel):
    """On-disk layout of the state file."""

    format_version: int = STATE_FORMAT_VERSION
    hash_version: str = HASH_VERSION
    serial: int = 0
    records: dict[str, RemoteRecord] = Field(default_factory=dict)


class StateStore:
    """Record store keyed by node identity.

    One asyncio.Lock per identifier gives apply workers exclusive access to a
    resource while its provider call and record write are in flight.
    Different identifiers never contend.
    """

    def __init__(self, path: Path | None = None, document: StateDocument | None = None) -> None:
        """Initialize a store.

        Args:
            path: File to persist to; None keeps the state in memory only.
            document: Initial content.
        """
        self._path = path
        self._document = document or StateDocument()
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def load(cls, path: Path) -> StateStore:
        """Load a state file, or start empty when it does not exist yet.

        Raises:
            StateError: If the file exists but cannot be parsed.
        """
        if not path.exists():
            logger.info("No state file found, starting empty", extra={"path": str(path)})
            return cls(path)

        try:
            size = path.stat().st_size
        except OSError as e:
            raise StateError(f"Failed to stat state file {path}: {e}") from e
        if size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            document = StateDocument.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}") from e
        except PydanticValidationError as e:
            raise StateError(f"Invalid state file {path}: {e}") from e

        if document.format_version != STATE_FORMAT_VERSION:
            raise StateError(
                f"Unsupported state format version {document.format_version} in {path}"
            )

        logger.info(
            "Loaded state",
            extra={
                "path": str(path),
                "serial": document.serial,
                "record_count": len(document.records),
            },
        )
        return cls(path, document)

    @property
    def serial(self) -> int:
        return self._document.serial

    @property
    def hash_version(self) -> str:
        return self._document.hash_version

    def check_hash_version(self) -> None:
        """Refuse to run when existing names were derived with another hash.

        Raises:
            ValidationError: If records exist and were written with a
                different naming hash version.
        """
        if self._document.records and self._document.hash_version != HASH_VERSION:
            raise ValidationError(
                "Naming hash version mismatch",
                [
                    f"state was written with '{self._document.hash_version}', "
                    f"engine uses '{HASH_VERSION}'; derived names would change"
                ],
            )

    def get(self, node_id: NodeId) -> RemoteRecord | None:
        return self._document.records.get(node_id.key)

    def __contains__(self, node_id: object) -> bool:
        return isinstance(node_id, NodeId) and node_id.key in self._document.records

    def __len__(self) -> int:
        return len(self._document.records)

    def records(self) -> list[RemoteRecord]:
        """All records in insertion order."""
        return list(self._document.records.values())

    def lock(self, node_id: NodeId) -> asyncio.Lock:
        """Per-identifier lock for exclusive mutation."""
        lock = self._locks.get(node_id.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[node_id.key] = lock
        return lock

    def put(self, record: RemoteRecord) -> None:
        """Insert or replace a record and persist."""
        self._document.records[record.node_id.key] = record
        self._document.hash_version = HASH_VERSION
        self.save()

    def remove(self, node_id: NodeId) -> bool:
        """Remove a record and persist.

        Returns:
            True if a record was removed.
        """
        if self._document.records.pop(node_id.key, None) is None:
            return False
        self.save()
        return True

    def forget(self, node_id: NodeId, persist: bool = True) -> bool:
        """Drop a record whose resource no longer exists remotely.

        With persist=False the record is dropped in memory only, so a dry run
        leaves the state file untouched.
        """
        if persist:
            removed = self.remove(node_id)
        else:
            removed = self._document.records.pop(node_id.key, None) is not None
        if removed:
            logger.warning(
                "Recorded resource missing remotely, record dropped",
                extra={"node_id": str(node_id)},
            )
        return removed

    def mark_drifted(self, node_id: NodeId, drifted: bool = True) -> None:
        record = self.get(node_id)
        if record is not None:
            record.drifted = drifted

    def save(self) -> None:
        """Persist atomically. No-op for in-memory stores.

        Raises:
            StateError: If the file cannot be written.
        """
        self._document.serial += 1
        if self._path is None:
            return

        payload = self._document.model_dump_json(indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug(
            "State saved",
            extra={"path": str(self._path), "serial": self._document.serial},
        )
