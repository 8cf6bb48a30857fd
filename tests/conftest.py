import base64
import os
import threading
from pathlib import Path

import pytest

from azblob_upload.client import BlockListEntry
from azblob_upload.config import Config
from azblob_upload.errors import TransferError

ACCOUNT_KEY = base64.b64encode(b"k" * 64).decode("ascii")
CONN_STR = (
    "DefaultEndpointsProtocol=https;AccountName=testaccount;"
    f"AccountKey={ACCOUNT_KEY};EndpointSuffix=core.windows.net"
)


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-transfer."""


class FakeBlockStore:
    """In-memory block blob with Azure's stage/commit semantics."""

    def __init__(self, fail_blocks=(), crash_blocks=(), fail_commit=False, drop_on_commit=()):
        self.fail_blocks = set(fail_blocks)
        self.crash_blocks = set(crash_blocks)
        self.fail_commit = fail_commit
        self.drop_on_commit = set(drop_on_commit)
        self.staged: dict = {}
        self.committed: list = []
        self.put_calls: list = []
        self.received: list = []
        self.commit_calls: list = []
        self._lock = threading.Lock()

    def put_block(self, block_id: str, data: bytes, checksum: bytes) -> None:
        with self._lock:
            self.put_calls.append(block_id)
        if block_id in self.crash_blocks:
            raise SimulatedCrash(block_id)
        if block_id in self.fail_blocks:
            raise TransferError(f"rejected {block_id}")
        with self._lock:
            self.staged[block_id] = (bytes(data), checksum)
            self.received.append((block_id, bytes(data), checksum))

    def put_block_list(self, block_ids) -> None:
        self.commit_calls.append(list(block_ids))
        if self.fail_commit:
            raise TransferError("commit rejected")
        committed_sizes = {e.block_id: e.size for e in self.get_block_list() if e.committed}
        for i in block_ids:
            if i not in self.staged and i not in committed_sizes:
                raise TransferError(f"InvalidBlockList: {i}")
        self.committed = [
            (i, len(self.staged[i][0]) if i in self.staged else committed_sizes[i])
            for i in block_ids
            if i not in self.drop_on_commit
        ]
        self.staged = {}

    def get_block_list(self) -> list:
        entries = [BlockListEntry(i, size, True) for i, size in self.committed]
        entries += [BlockListEntry(i, len(data), False) for i, (data, _) in self.staged.items()]
        return entries

    @property
    def committed_ids(self) -> list:
        return [i for i, _ in self.committed]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "BLOCK_SIZE_MB",
        "CONCURRENCY",
        "MAX_RETRIES",
        "RETRY_BASE_DELAY",
        "CONNECTION_TIMEOUT",
        "READ_TIMEOUT",
        "LOG_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_source(tmp_path: Path):
    def _make(size: int, name: str = "backup.bak") -> Path:
        path = tmp_path / name
        path.write_bytes(os.urandom(size))
        return path

    return _make


@pytest.fixture
def make_config():
    def _make(source: Path, block_size: int = 10, concurrency: int = 1, max_retries: int = 0) -> Config:
        return Config(
            conn_str=CONN_STR,
            container_name="uploads",
            source_file=source,
            block_size=block_size,
            concurrency=concurrency,
            max_retries=max_retries,
            retry_base_delay=0,
        )

    return _make
