"""
Bulk checkpoint operations with per-item failure isolation.

Every item's outcome lands in either ``success`` or ``failed``; one failing
item never aborts the rest of the batch. Parallel mode runs items on a
bounded thread pool and reports progress in completion order.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..cancellation import CancelledException, CancelToken
from ..types import (
    BatchFailure,
    BatchResult,
    Checkpoint,
    CheckpointDraft,
    CheckpointSnapshot,
    utcnow,
)
from .storage import CheckpointManager, CheckpointStorage, SessionLocks, sort_newest_first

logger = logging.getLogger(__name__)

NOT_FOUND = "Checkpoint not found"
CANCELLED = "cancelled"

ProgressCallback = Callable[[int, int], None]


@dataclass
class BatchOptions:
    batch_size: int = 5
    parallel: bool = True
    on_progress: Optional[ProgressCallback] = None


class _NotFound(LookupError):
    pass


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class BatchCheckpointOperations:
    """
    Create, restore and delete checkpoints in bulk.

    The storage collaborator must tolerate concurrent calls on different
    checkpoint ids. Retention cleanup lists and deletes under the session's
    lock from ``locks``; share one ``SessionLocks`` with maintenance.
    """

    def __init__(
        self,
        storage: CheckpointStorage,
        options: Optional[BatchOptions] = None,
        locks: Optional[SessionLocks] = None,
    ):
        self.storage = storage
        self.options = options or BatchOptions()
        self.locks = locks or SessionLocks()
        self._manager = CheckpointManager(storage)

        if self.options.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

    # ── Batch execution ────────────────────────────────────────

    def _report_progress(self, current: int, total: int) -> None:
        if not self.options.on_progress:
            return
        try:
            self.options.on_progress(current, total)
        except Exception as e:
            logger.warning("Batch progress callback failed: %s", e)

    @staticmethod
    def _attempt(work: Callable[[Any], Any], item: Any, cancel_token: Optional[CancelToken]):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return work(item)

    def _run(
        self,
        items: list,
        key: Callable[[Any], str],
        work: Callable[[Any], Any],
        parallel: Optional[bool],
        cancel_token: Optional[CancelToken],
    ) -> BatchResult:
        start = time.monotonic()
        result: BatchResult = BatchResult()
        total = len(items)
        if parallel is None:
            parallel = self.options.parallel

        def record(item, outcome=None, error: Optional[BaseException] = None):
            if error is None:
                result.success.append(outcome)
            else:
                result.failed.append(BatchFailure(id=key(item), error=_error_text(error)))
            self._report_progress(len(result.success) + len(result.failed), total)

        if parallel and total > 1:
            workers = min(self.options.batch_size, total)
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="checkpoint-batch"
            ) as pool:
                futures = {
                    pool.submit(self._attempt, work, item, cancel_token): item
                    for item in items
                }

                def cancel_pending():
                    for future in futures:
                        future.cancel()

                if cancel_token is not None:
                    cancel_token.on_cancel(cancel_pending)
                try:
                    for future in as_completed(futures):
                        item = futures[future]
                        if future.cancelled():
                            record(item, error=CancelledException(CANCELLED))
                            continue
                        try:
                            record(item, future.result())
                        except CancelledException:
                            record(item, error=CancelledException(CANCELLED))
                        except Exception as e:
                            record(item, error=e)
                finally:
                    if cancel_token is not None:
                        cancel_token.remove_callback(cancel_pending)
        else:
            for item in items:
                try:
                    record(item, self._attempt(work, item, cancel_token))
                except CancelledException:
                    record(item, error=CancelledException(CANCELLED))
                except Exception as e:
                    record(item, error=e)

        result.duration = time.monotonic() - start
        if result.failed:
            logger.warning(
                "Batch finished with %d/%d failures", len(result.failed), result.total
            )
        return result

    # ── Bulk operations ───────────────────────────────────────

    def create_batch(
        self,
        session_id: str,
        drafts: list[CheckpointDraft],
        parallel: Optional[bool] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> BatchResult[Checkpoint]:
        """Create one checkpoint per draft. Failures are keyed by draft name."""

        def create_one(draft: CheckpointDraft) -> Checkpoint:
            return self._manager.create(
                session_id, draft.name, draft.messages, draft.token_count
            )

        return self._run(drafts, lambda d: d.name, create_one, parallel, cancel_token)

    def restore_batch(
        self,
        checkpoint_ids: list[str],
        parallel: Optional[bool] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> BatchResult[CheckpointSnapshot]:
        def restore_one(checkpoint_id: str) -> CheckpointSnapshot:
            snapshot = self.storage.get_checkpoint(checkpoint_id)
            if snapshot is None:
                raise _NotFound(NOT_FOUND)
            return snapshot

        return self._run(checkpoint_ids, str, restore_one, parallel, cancel_token)

    def delete_batch(
        self,
        checkpoint_ids: list[str],
        parallel: Optional[bool] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> BatchResult[str]:
        def delete_one(checkpoint_id: str) -> str:
            if not self.storage.delete_checkpoint(checkpoint_id):
                raise _NotFound(NOT_FOUND)
            return checkpoint_id

        return self._run(checkpoint_ids, str, delete_one, parallel, cancel_token)

    # ── Queries and retention ─────────────────────────────────

    def list_checkpoints_by_date(
        self, session_id: str, start: datetime, end: datetime
    ) -> list[Checkpoint]:
        """Checkpoints created within [start, end], newest first."""
        return [
            cp for cp in self.storage.list_checkpoints(session_id)
            if start <= cp.created_at <= end
        ]

    def get_old_checkpoints(self, session_id: str, older_than_days: float) -> list[Checkpoint]:
        cutoff = utcnow() - timedelta(days=older_than_days)
        return [
            cp for cp in self.storage.list_checkpoints(session_id)
            if cp.created_at < cutoff
        ]

    def cleanup_old_checkpoints(
        self,
        session_id: str,
        keep_count: int,
        older_than_days: Optional[float] = None,
        parallel: Optional[bool] = None,
    ) -> BatchResult[str]:
        """
        Delete all but the newest ``keep_count`` checkpoints of a session.

        With ``older_than_days`` only checkpoints older than the cutoff are
        candidates, and ``keep_count`` of those are kept. The listing and the
        deletes run under the session lock.
        """
        if keep_count < 0:
            raise ValueError("keep_count must be >= 0")

        with self.locks.hold(session_id):
            checkpoints = self.storage.list_checkpoints(session_id)
            if older_than_days is not None:
                cutoff = utcnow() - timedelta(days=older_than_days)
                checkpoints = [cp for cp in checkpoints if cp.created_at < cutoff]

            to_delete = [cp.id for cp in sort_newest_first(checkpoints)[keep_count:]]
            if not to_delete:
                logger.debug("No checkpoints to clean up for session %s", session_id)
                return BatchResult()

            result = self.delete_batch(to_delete, parallel=parallel)

        logger.info(
            "Cleaned up %d checkpoints for session %s (kept %d)",
            len(result.success), session_id, keep_count,
        )
        return result
