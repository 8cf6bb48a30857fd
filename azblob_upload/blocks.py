"""
Block planning for block blob uploads.

A file of ``file_size`` bytes is cut into ``ceil(file_size / block_size)``
blocks. Every block is full-sized except possibly the last one. Block ids are
derived from the block number alone so that a retried block is staged under
the same id it had the first time.
"""

import base64
import math
from dataclasses import dataclass
from typing import Iterator

from azblob_upload.errors import ConfigError

DEFAULT_BLOCK_SIZE = 100 * 1024 * 1024
MAX_BLOCK_SIZE = 4000 * 1024 * 1024
MAX_BLOCK_COUNT = 50_000


def block_id(block_number: int) -> str:
    """Return the base64 block id for ``block_number``.

    Ids are fixed width (7 digits), so every id of a blob has the same length
    as Azure requires.
    """
    if block_number < 0 or block_number >= 10_000_000:
        raise ValueError(f"Block number out of range: {block_number}")
    raw = f"BlockId{block_number:07d}"
    return base64.b64encode(raw.encode("ascii")).decode("ascii")


@dataclass(frozen=True)
class BlockDescriptor:
    block_number: int
    offset: int
    length: int
    block_id: str


@dataclass(frozen=True)
class UploadPlan:
    file_size: int
    block_size: int = DEFAULT_BLOCK_SIZE

    def __post_init__(self) -> None:
        if self.file_size < 0:
            raise ValueError(f"File size must not be negative. Got {self.file_size}.")
        if self.block_size <= 0:
            raise ValueError(f"Block size must be positive. Got {self.block_size}.")
        if self.block_count > MAX_BLOCK_COUNT:
            raise ConfigError(
                f"File needs {self.block_count:,} blocks of {self.block_size:,} bytes; "
                f"Azure allows at most {MAX_BLOCK_COUNT:,}. Increase BLOCK_SIZE_MB."
            )

    @property
    def block_count(self) -> int:
        return math.ceil(self.file_size / self.block_size)

    def descriptor(self, block_number: int) -> BlockDescriptor:
        if not 0 <= block_number < self.block_count:
            raise IndexError(f"Block {block_number} outside plan of {self.block_count} blocks")
        offset = block_number * self.block_size
        return BlockDescriptor(
            block_number=block_number,
            offset=offset,
            length=min(self.block_size, self.file_size - offset),
            block_id=block_id(block_number),
        )

    def remaining_after(self, block_number: int) -> int:
        """Bytes not yet attempted when ``block_number`` is next in line."""
        return self.file_size - block_number * self.block_size


def iter_blocks(plan: UploadPlan, start: int = 0) -> Iterator[BlockDescriptor]:
    """Yield descriptors from ``start`` to the end of the plan, one at a time."""
    for number in range(start, plan.block_count):
        yield plan.descriptor(number)
