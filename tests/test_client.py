from pathlib import Path
from types import SimpleNamespace

import pytest
from azure.core.exceptions import AzureError, ResourceNotFoundError

from azblob_upload.blocks import block_id
from azblob_upload.client import AzureBlockStore, BlockListEntry, guess_content_type
from azblob_upload.errors import TransferError


class StubBlobClient:
    def __init__(self, error=None, block_list=None):
        self.error = error
        self.block_list = block_list or ([], [])
        self.calls = []

    def stage_block(self, **kwargs):
        self.calls.append(("stage_block", kwargs))
        if self.error:
            raise self.error

    def commit_block_list(self, blocks, **kwargs):
        self.calls.append(("commit_block_list", blocks, kwargs))
        if self.error:
            raise self.error

    def get_block_list(self, block_list_type="committed"):
        self.calls.append(("get_block_list", block_list_type))
        if self.error:
            raise self.error
        return self.block_list


def test_put_block_sends_id_data_and_md5() -> None:
    blob = StubBlobClient()
    AzureBlockStore(blob).put_block(block_id(3), b"abc", b"\x01" * 16)

    name, kwargs = blob.calls[0]
    assert name == "stage_block"
    assert kwargs["block_id"] == block_id(3)
    assert kwargs["data"] == b"abc"
    assert kwargs["length"] == 3
    assert kwargs["transactional_content_md5"] == b"\x01" * 16


def test_azure_errors_become_transfer_errors() -> None:
    store = AzureBlockStore(StubBlobClient(error=AzureError("connection reset")))
    with pytest.raises(TransferError):
        store.put_block(block_id(0), b"x", b"\x00" * 16)
    with pytest.raises(TransferError):
        store.put_block_list([block_id(0)])
    with pytest.raises(TransferError):
        store.get_block_list()


def test_commit_sends_ordered_blocks_with_metadata(tmp_path: Path) -> None:
    source = tmp_path / "export.csv"
    source.write_bytes(b"a,b\n")
    blob = StubBlobClient()

    AzureBlockStore(blob, source_file=source).put_block_list([block_id(0), block_id(1)])

    _, blocks, kwargs = blob.calls[0]
    assert [b.id for b in blocks] == [block_id(0), block_id(1)]
    assert kwargs["metadata"]["original_filename"] == "export.csv"
    assert kwargs["metadata"]["file_size_bytes"] == "4"
    assert kwargs["content_settings"].content_type == "text/csv"


def test_block_list_includes_uncommitted() -> None:
    committed = [SimpleNamespace(id=block_id(0), size=10)]
    uncommitted = [SimpleNamespace(id=block_id(1), size=5)]
    blob = StubBlobClient(block_list=(committed, uncommitted))

    entries = AzureBlockStore(blob).get_block_list()

    assert blob.calls == [("get_block_list", "all")]
    assert entries == [
        BlockListEntry(block_id(0), 10, True),
        BlockListEntry(block_id(1), 5, False),
    ]


def test_block_list_of_missing_blob_is_empty() -> None:
    store = AzureBlockStore(StubBlobClient(error=ResourceNotFoundError("BlobNotFound")))
    assert store.get_block_list() == []


def test_guess_content_type_defaults_to_octet_stream() -> None:
    assert guess_content_type(Path("db.bak")) == "application/octet-stream"
    assert guess_content_type(Path("notes.TXT")) == "text/plain"
    assert guess_content_type(Path("blob")) == "application/octet-stream"
