"""
Restart record persistence.

The record lives next to the source file as ``<stem>.azrestart`` so an
operator can find it and delete it to force a full re-upload.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from azblob_upload.blocks import BlockDescriptor, UploadPlan, block_id
from azblob_upload.errors import RestartRecordError

logger = logging.getLogger(__name__)

RESTART_SUFFIX = ".azrestart"
SCHEMA_VERSION = 1


def restart_path(source_file: Path) -> Path:
    source_file = Path(source_file)
    return source_file.parent / f"{source_file.stem}{RESTART_SUFFIX}"


@dataclass(frozen=True)
class RestartState:
    """Snapshot of an upload in progress.

    ``committed_block_ids`` only holds acknowledged blocks. The ``current_*``
    markers name the block at ``current_block_number`` while it is in flight
    and are ``None`` at a clean boundary.
    """

    file_size: int
    block_size: int
    current_block_number: int = 0
    remaining_bytes: int = 0
    committed_block_ids: tuple = ()
    current_block_id: Optional[str] = None
    current_block_size: Optional[int] = None
    updated_at: Optional[str] = field(default=None, compare=False)

    @classmethod
    def fresh(cls, plan: UploadPlan) -> "RestartState":
        return cls(
            file_size=plan.file_size,
            block_size=plan.block_size,
            current_block_number=0,
            remaining_bytes=plan.file_size,
        )

    @property
    def is_finished(self) -> bool:
        return self.remaining_bytes <= 0

    def matches(self, plan: UploadPlan) -> bool:
        """True if this record belongs to ``plan`` and agrees with it."""
        if self.file_size != plan.file_size or self.block_size != plan.block_size:
            return False
        if self.current_block_number > plan.block_count:
            return False
        if self.remaining_bytes != max(plan.remaining_after(self.current_block_number), 0):
            return False
        expected = tuple(block_id(n) for n in range(self.current_block_number))
        return self.committed_block_ids == expected

    def in_flight(self, block: BlockDescriptor) -> "RestartState":
        if block.block_number != self.current_block_number:
            raise ValueError(
                f"Block {block.block_number} is not next in line "
                f"(expected {self.current_block_number})"
            )
        return replace(self, current_block_id=block.block_id, current_block_size=block.length)

    def advance(self, block: BlockDescriptor) -> "RestartState":
        """State after ``block`` was acknowledged by the store."""
        if block.block_number != self.current_block_number:
            raise ValueError(
                f"Block {block.block_number} acknowledged out of order "
                f"(expected {self.current_block_number})"
            )
        committed = self.committed_block_ids
        if block.block_id not in committed:
            committed = committed + (block.block_id,)
        return replace(
            self,
            committed_block_ids=committed,
            current_block_number=self.current_block_number + 1,
            remaining_bytes=max(self.remaining_bytes - self.block_size, 0),
            current_block_id=None,
            current_block_size=None,
        )

    def to_dict(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "file_size": self.file_size,
            "block_size": self.block_size,
            "current_block_id": self.current_block_id,
            "current_block_number": self.current_block_number,
            "current_block_size": self.current_block_size,
            "remaining_bytes": self.remaining_bytes,
            "committed_block_ids": list(self.committed_block_ids),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RestartState":
        try:
            committed = tuple(str(i) for i in data["committed_block_ids"])
            state = cls(
                file_size=int(data["file_size"]),
                block_size=int(data["block_size"]),
                current_block_number=int(data["current_block_number"]),
                remaining_bytes=int(data["remaining_bytes"]),
                committed_block_ids=committed,
                current_block_id=data.get("current_block_id"),
                current_block_size=data.get("current_block_size"),
                updated_at=data.get("updated_at"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RestartRecordError(f"Restart record is missing or has invalid fields: {exc}") from exc
        if len(set(committed)) != len(committed):
            raise RestartRecordError("Restart record lists a block id more than once.")
        if len(committed) != state.current_block_number:
            raise RestartRecordError(
                f"Restart record is inconsistent: {len(committed)} committed block(s) "
                f"but next block is {state.current_block_number}."
            )
        return state


class RestartStore:
    """Reads and writes the restart record of one source file."""

    def __init__(self, source_file: Path) -> None:
        self.path = restart_path(source_file)

    def load(self) -> Optional[RestartState]:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RestartRecordError(f"Cannot parse restart record {self.path}: {exc}") from exc
        except OSError as exc:
            raise RestartRecordError(f"Cannot read restart record {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise RestartRecordError(f"Restart record {self.path} is not a JSON object.")
        return RestartState.from_dict(data)

    def save(self, state: RestartState) -> RestartState:
        state = replace(state, updated_at=datetime.now(timezone.utc).isoformat())
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                json.dump(state.to_dict(), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            tmp.replace(self.path)  # atomic rename
        except OSError as exc:
            raise RestartRecordError(f"Cannot write restart record {self.path}: {exc}") from exc
        logger.debug(
            "Restart record saved: next block %d, %d committed, %d bytes remaining",
            state.current_block_number,
            len(state.committed_block_ids),
            state.remaining_bytes,
        )
        return state

    def clear(self) -> None:
        if not self.path.exists():
            return
        try:
            self.path.unlink()
        except OSError as exc:
            raise RestartRecordError(f"Cannot remove restart record {self.path}: {exc}") from exc
        logger.debug("Restart record removed: %s", self.path)
