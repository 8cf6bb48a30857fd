import base64
import math

import pytest

from azblob_upload.blocks import (
    DEFAULT_BLOCK_SIZE,
    MAX_BLOCK_COUNT,
    UploadPlan,
    block_id,
    iter_blocks,
)
from azblob_upload.errors import ConfigError

MiB = 1024 * 1024


@pytest.mark.parametrize(
    "file_size,block_size",
    [(1, 10), (9, 10), (10, 10), (11, 10), (100, 10), (101, 7), (250 * MiB, 100 * MiB)],
)
def test_plan_yields_ceil_blocks_with_short_tail(file_size: int, block_size: int) -> None:
    plan = UploadPlan(file_size, block_size)
    blocks = list(iter_blocks(plan))

    assert len(blocks) == plan.block_count == math.ceil(file_size / block_size)
    assert all(b.length == block_size for b in blocks[:-1])
    expected_tail = file_size % block_size or block_size
    assert blocks[-1].length == expected_tail
    assert sum(b.length for b in blocks) == file_size
    assert [b.block_number for b in blocks] == list(range(len(blocks)))
    assert [b.offset for b in blocks] == [n * block_size for n in range(len(blocks))]


def test_250_mib_file_splits_into_100_100_50() -> None:
    plan = UploadPlan(250 * MiB, 100 * MiB)
    assert [b.length for b in iter_blocks(plan)] == [100 * MiB, 100 * MiB, 50 * MiB]


def test_zero_byte_file_has_no_blocks() -> None:
    plan = UploadPlan(0, DEFAULT_BLOCK_SIZE)
    assert plan.block_count == 0
    assert list(iter_blocks(plan)) == []


def test_iter_blocks_is_lazy_and_can_start_midway() -> None:
    plan = UploadPlan(10 * 1024 * 1024 * 1024, MiB)
    blocks = iter_blocks(plan, start=5)
    first = next(blocks)
    assert first.block_number == 5
    assert first.offset == 5 * MiB


def test_block_id_is_deterministic_and_fixed_width() -> None:
    assert block_id(0) == block_id(0)
    assert block_id(41) == UploadPlan(100, 1).descriptor(41).block_id
    assert len({len(block_id(n)) for n in (0, 9, 10, 999, 49_999)}) == 1
    assert base64.b64decode(block_id(7)) == b"BlockId0000007"


def test_block_ids_sort_in_block_order() -> None:
    decoded = [base64.b64decode(block_id(n)) for n in (0, 1, 2, 10, 100)]
    assert decoded == sorted(decoded)


def test_block_id_rejects_negative_numbers() -> None:
    with pytest.raises(ValueError):
        block_id(-1)


def test_plan_rejects_bad_sizes() -> None:
    with pytest.raises(ValueError):
        UploadPlan(-1, 10)
    with pytest.raises(ValueError):
        UploadPlan(10, 0)


def test_plan_rejects_more_blocks_than_azure_allows() -> None:
    with pytest.raises(ConfigError):
        UploadPlan((MAX_BLOCK_COUNT + 1) * MiB, MiB)
