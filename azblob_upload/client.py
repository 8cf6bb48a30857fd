"""
Block store seam.

The uploader only needs three operations from the remote store: stage a
block, commit a block list and read the block list back. ``AzureBlockStore``
implements them on top of ``azure-storage-blob``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Sequence

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings

from azblob_upload.errors import ConfigError, TransferError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockListEntry:
    block_id: str
    size: int
    committed: bool


class BlockStore(Protocol):
    def put_block(self, block_id: str, data: bytes, checksum: bytes) -> None:
        ...

    def put_block_list(self, block_ids: Sequence[str]) -> None:
        ...

    def get_block_list(self) -> list:
        """Return committed and uncommitted ``BlockListEntry`` items."""
        ...


class AzureBlockStore:
    """Stages and commits blocks of a single block blob."""

    def __init__(self, blob_client, source_file: Optional[Path] = None) -> None:
        self.blob_client = blob_client
        self.source_file = source_file

    @classmethod
    def from_connection_string(
        cls,
        conn_str: str,
        container_name: str,
        blob_name: str,
        source_file: Optional[Path] = None,
        connection_timeout: int = 30,
        read_timeout: int = 120,
    ) -> "AzureBlockStore":
        try:
            svc = BlobServiceClient.from_connection_string(
                conn_str,
                connection_timeout=connection_timeout,
                read_timeout=read_timeout,
            )
        except ValueError as exc:
            raise ConfigError(f"Cannot build Azure client from connection string: {exc}") from exc
        blob_client = svc.get_blob_client(container=container_name, blob=blob_name)
        return cls(blob_client, source_file=source_file)

    def put_block(self, block_id: str, data: bytes, checksum: bytes) -> None:
        try:
            self.blob_client.stage_block(
                block_id=block_id,
                data=data,
                length=len(data),
                transactional_content_md5=checksum,
            )
        except AzureError as exc:
            raise TransferError(f"Staging block {block_id} failed: {exc}") from exc

    def put_block_list(self, block_ids: Sequence[str]) -> None:
        kwargs = {}
        if self.source_file is not None:
            kwargs["metadata"] = {
                "uploaded_by": "azblob_upload",
                "uploaded_at": datetime.now(timezone.utc).isoformat(),
                "original_filename": self.source_file.name,
                "file_size_bytes": str(self.source_file.stat().st_size),
            }
            kwargs["content_settings"] = ContentSettings(
                content_type=guess_content_type(self.source_file)
            )
        try:
            self.blob_client.commit_block_list(
                [BlobBlock(block_id=i) for i in block_ids], **kwargs
            )
        except AzureError as exc:
            raise TransferError(f"Committing block list failed: {exc}") from exc

    def get_block_list(self) -> list:
        try:
            committed, uncommitted = self.blob_client.get_block_list(block_list_type="all")
        except ResourceNotFoundError:
            # nothing staged or committed yet
            return []
        except AzureError as exc:
            raise TransferError(f"Reading block list failed: {exc}") from exc
        return [BlockListEntry(b.id, b.size, True) for b in committed] + [
            BlockListEntry(b.id, b.size, False) for b in uncommitted
        ]


def guess_content_type(path: Path) -> str:
    suffix = path.suffix.lower()
    return {
        ".csv": "text/csv",
        ".json": "application/json",
        ".parquet": "application/octet-stream",
        ".zip": "application/zip",
        ".gz": "application/gzip",
        ".tar": "application/x-tar",
        ".txt": "text/plain",
        ".tsv": "text/tab-separated-values",
        ".vhd": "application/octet-stream",
        ".bak": "application/octet-stream",
    }.get(suffix, "application/octet-stream")
