"""
Resumable block blob upload.

``BlockUploader.run`` stages the blocks of one file in order, writes the
restart record once per block, commits the block list and verifies it. A run
that is interrupted or hits a transfer error leaves the restart record behind;
the next run picks up at the first block that was not acknowledged.
"""

import base64
import hashlib
import logging
import signal
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from azblob_upload.blocks import BlockDescriptor, UploadPlan, iter_blocks
from azblob_upload.client import BlockStore
from azblob_upload.config import Config
from azblob_upload.errors import (
    LocalReadError,
    RestartRecordError,
    TransferError,
    VerificationError,
)
from azblob_upload.restart import RestartState, RestartStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockResult:
    block: BlockDescriptor
    checksum: bytes
    error: Optional[TransferError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def block_checksum(data: bytes) -> bytes:
    return hashlib.md5(data).digest()


class BlockUploader:
    """Uploads a single file to a block store using the block blob pattern."""

    def __init__(
        self,
        cfg: Config,
        store: BlockStore,
        restart_store: Optional[RestartStore] = None,
        handle_signals: bool = True,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.file_path = Path(cfg.source_file)
        self.restart_store = restart_store or RestartStore(self.file_path)
        self.handle_signals = handle_signals
        self._abort = False

    def _handle_interrupt(self, signum, frame):
        logger.warning("Interrupt received. Finishing blocks in flight, saving progress and exiting...")
        self._abort = True

    def abort(self) -> None:
        self._abort = True

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _initial_state(self, plan: UploadPlan) -> RestartState:
        try:
            recovered = self.restart_store.load()
        except RestartRecordError as exc:
            logger.warning(f"Ignoring unreadable restart record, starting fresh: {exc}")
            return RestartState.fresh(plan)

        if recovered is None:
            return RestartState.fresh(plan)
        if not recovered.matches(plan):
            logger.warning(
                "Restart record mismatch, starting fresh (file size or block size changed)."
            )
            return RestartState.fresh(plan)

        logger.info("!! RESTARTING UPLOAD !!")
        logger.info(
            f"Resuming: {len(recovered.committed_block_ids)}/{plan.block_count} blocks already done, "
            f"{recovered.remaining_bytes:,} bytes left."
        )
        return recovered

    def _save_head(self, plan: UploadPlan, state: RestartState) -> RestartState:
        """Persist ``state`` with the in-flight markers on the next block to retry."""
        if not state.is_finished:
            state = state.in_flight(plan.descriptor(state.current_block_number))
        return self.restart_store.save(state)

    # ------------------------------------------------------------------
    # Block helpers
    # ------------------------------------------------------------------

    def _read_block(self, fh: BinaryIO, block: BlockDescriptor) -> bytes:
        try:
            fh.seek(block.offset)
            data = fh.read(block.length)
        except OSError as exc:
            raise LocalReadError(f"Block {block.block_number}: cannot read {self.file_path}: {exc}") from exc
        if len(data) != block.length:
            raise LocalReadError(
                f"Block {block.block_number}: short read at offset {block.offset:,} "
                f"({len(data):,} of {block.length:,} bytes). Did the source file shrink?"
            )
        return data

    def _put_block_with_retry(self, block: BlockDescriptor, data: bytes, checksum: bytes) -> BlockResult:
        """Stage one block with exponential-backoff retry."""
        last_exc: Optional[TransferError] = None
        for attempt in range(1, self.cfg.max_retries + 2):  # +2 so attempt 1 = first try
            if self._abort:
                return BlockResult(block, checksum, TransferError("Upload aborted by user."))
            try:
                self.store.put_block(block.block_id, data, checksum)
                return BlockResult(block, checksum)
            except TransferError as exc:
                last_exc = exc
                if attempt > self.cfg.max_retries:
                    break
                delay = self.cfg.retry_base_delay ** attempt
                logger.warning(
                    f"Block {block.block_number}: transient error (attempt {attempt}/{self.cfg.max_retries}), "
                    f"retrying in {delay}s: {exc}"
                )
                time.sleep(delay)

        logger.error(f"Block {block.block_number}: failed after {self.cfg.max_retries} retries: {last_exc}")
        return BlockResult(block, checksum, last_exc)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def _transfer_blocks(self, plan: UploadPlan, state: RestartState) -> Optional[RestartState]:
        """Stage every block from ``state`` on. Returns None if the run must stop."""
        blocks = iter_blocks(plan, start=state.current_block_number)
        pending = {}
        acknowledged = {}
        failure: Optional[TransferError] = None

        t0 = time.monotonic()
        bytes_sent = 0
        resumed_bytes = plan.file_size - state.remaining_bytes

        with self.file_path.open("rb") as fh, ThreadPoolExecutor(max_workers=self.cfg.concurrency) as pool:
            while True:
                while failure is None and not self._abort and len(pending) < self.cfg.concurrency:
                    block = next(blocks, None)
                    if block is None:
                        break
                    data = self._read_block(fh, block)
                    checksum = block_checksum(data)
                    pending[pool.submit(self._put_block_with_retry, block, data, checksum)] = block

                if not pending:
                    break

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    del pending[future]
                    result = future.result()
                    if not result.ok:
                        failure = failure or result.error
                        continue
                    acknowledged[result.block.block_number] = result

                advanced = False
                while state.current_block_number in acknowledged:
                    result = acknowledged.pop(state.current_block_number)
                    state = state.advance(result.block)
                    advanced = True

                    bytes_sent += result.block.length
                    elapsed = max(time.monotonic() - t0, 0.001)
                    speed = bytes_sent / elapsed
                    done_bytes = resumed_bytes + bytes_sent
                    pct = done_bytes / plan.file_size * 100
                    eta_s = (plan.file_size - done_bytes) / speed
                    logger.info(
                        f"[{pct:5.1f}%] block {result.block.block_number + 1}/{plan.block_count}  "
                        f"size={result.block.length:,}  id={result.block.block_id}  "
                        f"md5={_b64(result.checksum)}  "
                        f"speed={speed / (1024 * 1024):.1f} MB/s  eta={fmt_seconds(eta_s)}"
                    )
                if advanced:
                    state = self._save_head(plan, state)

        if not state.is_finished:
            state = self._save_head(plan, state)
            reason = failure if failure is not None else "interrupted"
            logger.error(
                f"Stopped at block {state.current_block_number}/{plan.block_count} ({reason}). "
                f"Progress saved to {self.restart_store.path}; re-run to resume."
            )
            return None
        return state

    def _report_block_list(self, when: str) -> list:
        entries = self.store.get_block_list()
        logger.info(f"Block list {when}: {len(entries)} block(s)")
        for entry in entries:
            if entry.committed:
                logger.debug(f"Block {entry.block_id} has been committed to block list. Block length = {entry.size}")
            else:
                logger.debug(f"Block {entry.block_id} is uncommitted. Block length = {entry.size}")
        return entries

    def _verify(self, plan: UploadPlan, state: RestartState, entries: list) -> None:
        intended = list(state.committed_block_ids)
        committed = [e for e in entries if e.committed]
        committed_ids = [e.block_id for e in committed]
        if committed_ids != intended:
            missing = [i for i in intended if i not in set(committed_ids)]
            raise VerificationError(
                f"Committed block list does not match: expected {len(intended)} block(s), "
                f"found {len(committed_ids)}; missing {missing or 'none'}."
            )
        committed_size = sum(e.size for e in committed)
        if committed_size != plan.file_size:
            raise VerificationError(
                f"Committed blob holds {committed_size:,} bytes, source file has {plan.file_size:,}."
            )

    def _commit(self, plan: UploadPlan, state: RestartState) -> bool:
        logger.info(f"All blocks staged, committing block list of {len(state.committed_block_ids)} block(s)...")
        try:
            self._report_block_list("before commit")
            self.store.put_block_list(list(state.committed_block_ids))
            entries = self._report_block_list("after commit")
        except TransferError as exc:
            logger.error(f"Commit failed: {exc}. Re-run to retry without re-uploading blocks.")
            return False

        try:
            self._verify(plan, state, entries)
        except VerificationError as exc:
            logger.error(f"Verification failed: {exc}. Restart record kept at {self.restart_store.path}.")
            raise

        self.restart_store.clear()
        return True

    def run(self) -> bool:
        """Execute the upload. Returns True on success, False if a re-run can resume it."""
        try:
            file_size = self.file_path.stat().st_size
        except OSError as exc:
            raise LocalReadError(f"Cannot stat {self.file_path}: {exc}") from exc
        plan = UploadPlan(file_size, self.cfg.block_size)

        logger.info(
            f"File : {self.file_path}  ({file_size:,} bytes / "
            f"{file_size / (1024**3):.3f} GiB)"
        )
        logger.info(
            f"Block: {self.cfg.block_size // (1024*1024)} MB  |  "
            f"Blocks: {plan.block_count}  |  "
            f"Threads: {self.cfg.concurrency}"
        )

        state = self._initial_state(plan)
        state = self._save_head(plan, state)

        previous = {}
        if self.handle_signals and threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, self._handle_interrupt)
        try:
            if not state.is_finished:
                logger.info(
                    f"Uploading {plan.block_count - state.current_block_number} block(s) "
                    f"with {self.cfg.concurrency} thread(s)..."
                )
                state = self._transfer_blocks(plan, state)
                if state is None:
                    return False
            else:
                logger.info("All blocks already uploaded, skipping to commit.")
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        if not self._commit(plan, state):
            return False
        logger.info("Upload complete.")
        return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


def fmt_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"
