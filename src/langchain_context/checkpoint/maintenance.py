"""
Checkpoint retention enforcement.

``CheckpointMaintenance`` applies the per-session and global checkpoint caps,
either on demand (``perform_cleanup``) or periodically on a daemon thread
(``start_auto_cleanup``). Deletions go through ``BatchCheckpointOperations``
and hold the same per-session locks as batch cleanup.
"""

import logging
import threading
from collections import defaultdict
from typing import Optional

from ..config import MaintenanceConfig
from ..types import BatchResult, CleanupReport, StorageStats
from .batch import BatchCheckpointOperations, BatchOptions
from .storage import CheckpointStorage, SessionLocks, sort_newest_first

logger = logging.getLogger(__name__)


class CheckpointMaintenance:
    def __init__(
        self,
        storage: CheckpointStorage,
        config: Optional[MaintenanceConfig] = None,
        batch: Optional[BatchCheckpointOperations] = None,
        locks: Optional[SessionLocks] = None,
    ):
        self.storage = storage
        self.config = config or MaintenanceConfig()
        if batch is None:
            batch = BatchCheckpointOperations(storage, BatchOptions(), locks=locks)
        self.batch = batch
        self.locks = batch.locks

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Background cleanup ────────────────────────────────────

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start_auto_cleanup(self) -> None:
        """Start the periodic cleanup thread. Calling it again is a no-op."""
        if not self.config.auto_cleanup:
            logger.debug("Auto cleanup disabled by configuration")
            return

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="checkpoint-maintenance",
                daemon=True,
            )
            self._thread.start()

        logger.info(
            "Checkpoint auto cleanup started (every %.1f hours)",
            self.config.cleanup_interval_hours,
        )

    def stop_auto_cleanup(self, timeout: Optional[float] = None) -> None:
        """Stop the cleanup thread, waiting for an in-flight pass to finish."""
        with self._lock:
            thread, self._thread = self._thread, None
            if thread is None:
                return
            self._stop_event.set()

        thread.join(timeout)
        logger.info("Checkpoint auto cleanup stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.cleanup_interval_seconds):
            try:
                self.perform_cleanup()
            except Exception as e:
                logger.warning("Auto cleanup failed: %s", e)

    # ── Cleanup ───────────────────────────────────────────────

    @staticmethod
    def _tally(report: CleanupReport, result: BatchResult, tokens: dict[str, int]) -> None:
        report.deleted_checkpoints += len(result.success)
        report.freed_tokens += sum(tokens.get(cid, 0) for cid in result.success)
        report.failed.extend(result.failed)

    def perform_cleanup(self) -> CleanupReport:
        """
        Enforce ``max_checkpoints_per_session`` for every session, then trim
        the oldest checkpoints across all sessions down to
        ``max_total_checkpoints``.
        """
        report = CleanupReport()

        checkpoints = self.storage.list_all_checkpoints()
        tokens = {cp.id: cp.token_count for cp in checkpoints}
        per_session: dict[str, int] = defaultdict(int)
        for cp in checkpoints:
            per_session[cp.session_id] += 1

        for session_id, count in per_session.items():
            if count <= self.config.max_checkpoints_per_session:
                continue
            result = self.batch.cleanup_old_checkpoints(
                session_id, self.config.max_checkpoints_per_session
            )
            self._tally(report, result, tokens)

        self._enforce_total_cap(report)

        if report.deleted_checkpoints or report.failed:
            logger.info(
                "Checkpoint cleanup: deleted %d, freed %d tokens, %d failures",
                report.deleted_checkpoints, report.freed_tokens, len(report.failed),
            )
        else:
            logger.debug("Checkpoint cleanup: nothing to delete")
        return report

    def _enforce_total_cap(self, report: CleanupReport) -> None:
        cap = self.config.max_total_checkpoints
        listed = self.storage.list_all_checkpoints()
        if len(listed) <= cap:
            return

        sessions = {cp.session_id for cp in listed}
        with self.locks.hold_many(sessions):
            # Re-list under the locks; other cleanups may have run meanwhile
            checkpoints = self.storage.list_all_checkpoints()
            excess = len(checkpoints) - cap
            if excess <= 0:
                return

            # Only sessions whose locks are held are eligible
            held = [cp for cp in checkpoints if cp.session_id in sessions]
            oldest = sort_newest_first(held)[-excess:]
            tokens = {cp.id: cp.token_count for cp in oldest}
            result = self.batch.delete_batch([cp.id for cp in oldest])
        self._tally(report, result, tokens)

    # ── Stats ─────────────────────────────────────────────────

    def get_storage_stats(self) -> StorageStats:
        checkpoints = self.storage.list_all_checkpoints()
        created = [cp.created_at for cp in checkpoints]
        return StorageStats(
            total_checkpoints=len(checkpoints),
            total_sessions=len({cp.session_id for cp in checkpoints}),
            total_tokens=sum(cp.token_count for cp in checkpoints),
            oldest_checkpoint=min(created) if created else None,
            newest_checkpoint=max(created) if created else None,
        )
