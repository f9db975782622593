"""
Pipeline -- one run-to-completion pass over every artifact.

    scan -> plan -> encrypt -> sync -> purge

The run holds the host lock throughout. Configuration problems are
found before anything is touched; per-artifact failures are logged
and left for the next run; a ledger that cannot be written stops the
run. The ledger is the only thing that decides what happens next, so
running twice in a row changes nothing the second time.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from .encryption import EncryptionEngine, check_layers
from .errors import ArtifactIOError, ConfigError, KeyStoreError, TransportError
from .keystore import KeyStore, create_keystore
from .ledger import PipelineLedger
from .lock import RunLock
from .models import (
    Artifact,
    ArtifactFailure,
    ArchiveConfig,
    LedgerEntry,
    RunReport,
    Stage,
    WorkItem,
)
from .reaper import RetentionReaper
from .scanner import Scanner
from .stages import StageAdvancer, sha256_file
from .transport import SyncDispatcher

logger = logging.getLogger("skarchive.pipeline")

RECOVERABLE = (KeyStoreError, ArtifactIOError, TransportError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Pipeline:
    """Coordinates scanner, advancer, engine, dispatcher and reaper."""

    def __init__(
        self,
        config: ArchiveConfig,
        keystore: Optional[KeyStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Build the pipeline and check the static configuration.

        Args:
            config: Validated archive configuration.
            keystore: Key store to use. Defaults to the configured backend.
            clock: Source of "now". Defaults to UTC wall clock.

        Raises:
            ConfigError: On bad thresholds, no signing key, or empty layers.
        """
        self.config = config
        self.clock = clock or utcnow
        self.advancer = StageAdvancer(config.sources)
        if config.signing_key is None:
            raise ConfigError("no signing key configured")
        check_layers(config.recipients)
        SyncDispatcher(config.sync, config.staging_dir, ledger=None)
        self.keystore = keystore or create_keystore(
            config.keystore, timeout=config.operation_timeout_seconds
        )
        self.scanner = Scanner(config.sources)
        self._report_lock = threading.Lock()

    def preflight(self) -> None:
        """Resolve the signing key and at least one recipient per layer.

        Recipients that do not resolve are tolerated as long as their layer
        has another that does; encryption then fails per artifact until the
        key is imported.

        Raises:
            ConfigError: If the signing key or a whole layer is unresolvable.
        """
        signing = self.config.signing_key
        try:
            self.keystore.resolve(signing.key_id)
        except KeyStoreError as exc:
            raise ConfigError(f"signing key {signing.key_id} cannot be resolved: {exc}") from exc

        for index, layer in enumerate(self.config.recipients, start=1):
            resolved = 0
            for key_id in layer:
                try:
                    self.keystore.resolve(key_id)
                    resolved += 1
                except KeyStoreError as exc:
                    logger.warning("recipient layer %d: %s", index, exc)
            if not resolved:
                raise ConfigError(f"recipient layer {index} has no valid recipients")

    def run(self, dry_run: bool = False) -> RunReport:
        """Execute one pass.

        Args:
            dry_run: Log what would happen without changing anything.

        Returns:
            RunReport with transitions and per-artifact failures.

        Raises:
            ConfigError: Configuration is invalid. Nothing was touched.
            LockError: Another run is active. Nothing was touched.
            LedgerError: The ledger could not be read or written.
        """
        self.preflight()
        report = RunReport(started_at=self.clock(), dry_run=dry_run)

        with RunLock(self.config.lock_path):
            ledger = PipelineLedger(self.config.ledger_path)
            engine = EncryptionEngine(
                self.keystore,
                self.config.signing_key,
                self.config.recipients,
                self.config.staging_dir,
                ledger,
                self.config.retention,
                timeout=self.config.operation_timeout_seconds,
            )
            dispatcher = SyncDispatcher(
                self.config.sync,
                self.config.staging_dir,
                ledger,
                timeout=self.config.operation_timeout_seconds,
            )
            reaper = RetentionReaper(self.config.sync, ledger)

            if not dry_run:
                engine.discard_orphans()

            now = self.clock()
            items = list(self.advancer.plan(self._candidates(ledger, engine, report, dry_run), ledger, now))
            for artifact_type, exc in self.scanner.errors.items():
                report.type_errors[artifact_type.value] = str(exc)
            self._encrypt_stage(items, engine, report, dry_run)

            if dispatcher.enabled:
                self._sync_stage(dispatcher, report, dry_run)
                self._purge_stage(reaper, report, dry_run)
            else:
                logger.debug("No destination configured; sync and purge skipped")

        report.finished_at = self.clock()
        logger.info(
            "Run complete: %d scanned, %d encrypted, %d synced, %d purged, %d failed",
            report.scanned, len(report.encrypted), len(report.synced),
            len(report.purged), len(report.failures),
        )
        return report

    def _candidates(
        self,
        ledger: PipelineLedger,
        engine: EncryptionEngine,
        report: RunReport,
        dry_run: bool,
    ) -> Iterator[Artifact]:
        """Scanned artifacts the ledger has not moved past Plaintext."""
        for artifact in self.scanner:
            report.scanned += 1
            entry = ledger.get(artifact.path)
            if entry is None or entry.stage == Stage.PLAINTEXT:
                yield artifact
                continue
            self._finish_retention(artifact, entry, engine, dry_run)

    def _finish_retention(
        self,
        artifact: Artifact,
        entry: LedgerEntry,
        engine: EncryptionEngine,
        dry_run: bool,
    ) -> None:
        """Remove a plaintext a killed run left behind after committing Encrypted."""
        if entry.stage == Stage.PURGED:
            logger.warning("%s: file reappeared after purge, leaving it alone", artifact.path)
            return
        if not self.config.retention.remove_plaintext or dry_run:
            return
        try:
            same = entry.digest is not None and sha256_file(artifact.path) == entry.digest
        except OSError as exc:
            logger.warning("cannot hash %s: %s", artifact.path, exc)
            return
        if same:
            engine.remove_plaintext(artifact.path)
        else:
            logger.warning("%s: content differs from the encrypted copy, leaving it alone", artifact.path)

    def _record_failure(self, report: RunReport, path: str, stage: Stage, exc: Exception) -> None:
        with self._report_lock:
            report.failures.append(ArtifactFailure(path=path, stage=stage, error=str(exc)))

    def _encrypt_one(
        self,
        item: WorkItem,
        engine: EncryptionEngine,
        report: RunReport,
        dry_run: bool,
    ) -> None:
        artifact = item.artifact
        label = artifact.artifact_type.value
        if dry_run:
            logger.info("%s %s: would move plaintext -> encrypted", label, artifact.path)
            with self._report_lock:
                report.encrypted.append(str(artifact.path))
            return
        try:
            engine.encrypt(artifact, self.clock())
        except RECOVERABLE as exc:
            logger.error("%s %s: plaintext -> encrypted failed: %s", label, artifact.path, exc)
            self._record_failure(report, str(artifact.path), Stage.PLAINTEXT, exc)
            return
        logger.info("%s %s: plaintext -> encrypted", label, artifact.path)
        with self._report_lock:
            report.encrypted.append(str(artifact.path))

    def _encrypt_stage(
        self,
        items: list[WorkItem],
        engine: EncryptionEngine,
        report: RunReport,
        dry_run: bool,
    ) -> None:
        if self.config.workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(
                max_workers=self.config.workers, thread_name_prefix="skarchive-encrypt"
            ) as pool:
                futures = [
                    pool.submit(self._encrypt_one, item, engine, report, dry_run)
                    for item in items
                ]
                for future in futures:
                    future.result()
        else:
            for item in items:
                self._encrypt_one(item, engine, report, dry_run)

    def _sync_stage(self, dispatcher: SyncDispatcher, report: RunReport, dry_run: bool) -> None:
        for entry in dispatcher.pending():
            label = entry.artifact_type.value
            if dry_run:
                logger.info("%s %s: would move encrypted -> synced", label, entry.path)
                report.synced.append(entry.path)
                continue
            try:
                dispatcher.sync(entry, self.clock())
            except RECOVERABLE as exc:
                logger.error("%s %s: encrypted -> synced failed: %s", label, entry.path, exc)
                self._record_failure(report, entry.path, Stage.ENCRYPTED, exc)
                continue
            logger.info("%s %s: encrypted -> synced", label, entry.path)
            report.synced.append(entry.path)

    def _purge_stage(self, reaper: RetentionReaper, report: RunReport, dry_run: bool) -> None:
        for entry in reaper.pending(self.clock()):
            label = entry.artifact_type.value
            if dry_run:
                logger.info("%s %s: would move synced -> purged", label, entry.path)
                report.purged.append(entry.path)
                continue
            try:
                reaper.purge(entry, self.clock())
            except RECOVERABLE as exc:
                logger.error("%s %s: synced -> purged failed: %s", label, entry.path, exc)
                self._record_failure(report, entry.path, Stage.SYNCED, exc)
                continue
            logger.info("%s %s: synced -> purged", label, entry.path)
            report.purged.append(entry.path)
