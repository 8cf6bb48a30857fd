"""
azblob-upload: resumable large file upload to Azure Blob Storage.

Usage:
    python -m azblob_upload <parameters.json> [--dry-run]

The file is staged as blocks of BLOCK_SIZE_MB and committed as one block
blob named after the source file. Progress is kept in
``<source dir>/<source stem>.azrestart``; re-run the same command after a
failure to continue where the previous run stopped. Delete that file to force
a full re-upload.
"""

import argparse
import sys
import time
from pathlib import Path

from azblob_upload.blocks import UploadPlan
from azblob_upload.client import AzureBlockStore
from azblob_upload.config import Config
from azblob_upload.errors import (
    ConfigError,
    LocalReadError,
    RestartRecordError,
    VerificationError,
)
from azblob_upload.log import build_logger
from azblob_upload.restart import restart_path
from azblob_upload.uploader import BlockUploader, fmt_seconds

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_RESUMABLE = 2


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="azblob-upload",
        description=(
            "Upload a large file to Azure Blob Storage as a block blob "
            "with resumable, block-by-block transfers."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Parameters file:\n"
            "  {\n"
            '    "storageConnectionString": "<storage connection string>",\n'
            '    "containerName": "<storage container name>",\n'
            '    "sourceFile": "<source file full path>"\n'
            "  }\n\n"
            "Examples:\n"
            "  python -m azblob_upload parameters.json\n"
            "  BLOCK_SIZE_MB=64 CONCURRENCY=4 python -m azblob_upload parameters.json\n"
            "  python -m azblob_upload parameters.json --dry-run\n"
        ),
    )
    parser.add_argument("parameters_file", help="Path to the JSON parameters file.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the parameters and show the block plan without uploading.",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = _parse_args(argv)

    # Config: validate everything (including connection string) before touching Azure
    try:
        cfg = Config.load(Path(args.parameters_file))
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(EXIT_FATAL)

    log_dir = Path(cfg.log_path) if cfg.log_path else Path.cwd() / "logs"
    logger = build_logger(log_dir)

    logger.info("=" * 60)
    logger.info("  azblob-upload: Azure block blob uploader")
    logger.info("=" * 60)
    logger.info(f"Source    : {cfg.source_file}")
    logger.info(f"Target    : {cfg.container_name}/{cfg.blob_name}")
    logger.info(f"Restart   : {restart_path(cfg.source_file)}")

    if args.dry_run:
        try:
            plan = UploadPlan(cfg.source_file.stat().st_size, cfg.block_size)
        except ConfigError as exc:
            logger.error(str(exc))
            sys.exit(EXIT_FATAL)
        logger.info(
            f"[DRY RUN] {plan.file_size:,} bytes in {plan.block_count} block(s) "
            f"of {cfg.block_size // (1024 * 1024)} MB"
        )
        logger.info("[DRY RUN] Nothing was uploaded.")
        sys.exit(EXIT_OK)

    try:
        store = AzureBlockStore.from_connection_string(
            cfg.conn_str,
            cfg.container_name,
            cfg.blob_name,
            source_file=cfg.source_file,
            connection_timeout=cfg.connection_timeout,
            read_timeout=cfg.read_timeout,
        )
    except ConfigError as exc:
        logger.error(str(exc))
        sys.exit(EXIT_FATAL)

    t0 = time.monotonic()
    try:
        success = BlockUploader(cfg, store).run()
    except (ConfigError, LocalReadError, RestartRecordError, VerificationError) as exc:
        logger.error(f"Upload failed: {exc}")
        sys.exit(EXIT_FATAL)
    finally:
        logger.info(f"Process complete. Total elapsed time: {fmt_seconds(time.monotonic() - t0)}")

    if not success:
        logger.warning("Upload incomplete. Re-run the same command to resume.")
        sys.exit(EXIT_RESUMABLE)
    print(f"\nUploaded {cfg.source_file.name} to container '{cfg.container_name}'.")
    sys.exit(EXIT_OK)
