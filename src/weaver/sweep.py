"""
Periodic reconciliation sweep.

Two passes, both bounded by a grace period so in-flight uploads are never
touched:
1. Orphans: objects in the primary store with no File row pointing at them
   (left behind by metadata failures and purges) are deleted.
2. Missing backups: Completed files without backup fields get exactly one
   more backup attempt. A failed retry is recorded on the row and the file
   is never retried again.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List
from weaver.errors import BackupSoftFailure, NotFound, ObjectStoreError
from weaver.logging import logger
from weaver.models.base import utcnow
from weaver.orchestrator import StorageOrchestrator
from weaver.storage.metadata import PatchOutcome
from weaver.storage.objects import KEY_PREFIX


@dataclass
class SweepReport:
    orphans_deleted: List[str] = field(default_factory=list)
    orphan_errors: List[str] = field(default_factory=list)
    backups_applied: List[str] = field(default_factory=list)
    backups_abandoned: List[str] = field(default_factory=list)
    backup_errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{len(self.orphans_deleted)} orphan(s) deleted, "
            f"{len(self.orphan_errors)} orphan error(s), "
            f"{len(self.backups_applied)} backup(s) recovered, "
            f"{len(self.backups_abandoned)} backup(s) abandoned, "
            f"{len(self.backup_errors)} backup error(s)"
        )


class ReconciliationSweep:
    def __init__(
        self,
        orchestrator: StorageOrchestrator,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 100,
    ):
        self.orchestrator = orchestrator
        self.metadata = orchestrator.metadata
        self.objects = orchestrator.objects
        self.grace = timedelta(seconds=orchestrator.config.sweep_grace_seconds)
        self._clock = clock
        self.batch_size = batch_size

    def _cutoff(self) -> datetime:
        return self._clock() - self.grace

    def sweep_orphans(self, report: SweepReport) -> None:
        cutoff = self._cutoff()
        # Listing before reading references means a blob committed mid-sweep
        # is either referenced already or younger than the cutoff
        candidates = [
            info for info in self.objects.list_objects(KEY_PREFIX)
            if info.last_modified.replace(tzinfo=None) <= cutoff.replace(tzinfo=None)
        ]
        if not candidates:
            return

        referenced = self.metadata.referenced_storage_keys()
        for info in candidates:
            if info.key in referenced:
                continue
            try:
                self.objects.delete(info.key)
                report.orphans_deleted.append(info.key)
                logger.info(f"Deleted orphaned object {info.key} ({info.size} bytes)")
            except ObjectStoreError as e:
                report.orphan_errors.append(info.key)
                logger.warning(f"Could not delete orphaned object {info.key}: {e}")

    def retry_missing_backups(self, report: SweepReport) -> None:
        if not self.orchestrator.config.backup_enabled or self.orchestrator.backup is None:
            logger.info("Backup disabled; skipping backup reconciliation")
            return

        for file in self.metadata.files_missing_backup(self._cutoff(), limit=self.batch_size):
            try:
                outcome = self.orchestrator.reconcile_backup(file.id)
            except NotFound:
                # Purged between the select and the retry
                logger.info(f"File {file.id} disappeared before its backup retry")
                continue
            except BackupSoftFailure as e:
                self.metadata.mark_backup_abandoned(file.id, f"backup abandoned: {e}")
                report.backups_abandoned.append(file.id)
                logger.warning(f"Gave up on backup for file {file.id}: {e}")
                continue
            except Exception:
                # One bad row must not stop the batch; it is picked up next run
                report.backup_errors.append(file.id)
                logger.exception(f"Backup retry failed for file {file.id}")
                continue
            if outcome == PatchOutcome.APPLIED:
                report.backups_applied.append(file.id)

    def run(self, orphans: bool = True, backups: bool = True) -> SweepReport:
        report = SweepReport()
        if orphans:
            self.sweep_orphans(report)
        if backups:
            self.retry_missing_backups(report)
        logger.info(f"Sweep finished: {report.summary()}")
        return report
