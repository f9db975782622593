"""
ConfigValidator -- the ``config-test`` dry run.

Checks everything a real run depends on without changing anything:
thresholds, a sign/verify round trip, every recipient key id, the
destination, and the staging directory. Each check reports the
identifier it was about, so the first failure says exactly which key
or destination is wrong.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .encryption import check_layers
from .errors import ArchiveError, ConfigError, KeyStoreError
from .keystore.base import KeyStore
from .models import ArchiveConfig, CheckResult, ValidationReport
from .stages import check_thresholds
from .transport import SyncDispatcher

logger = logging.getLogger("skarchive.validator")

PROBE_PAYLOAD = b"skarchive config-test signature probe\n"


class ConfigValidator:
    """Runs every config-test check and collects a report."""

    def __init__(self, config: ArchiveConfig, keystore: KeyStore):
        self.config = config
        self.keystore = keystore

    def run(self) -> ValidationReport:
        report = ValidationReport()
        for check in (
            self.check_thresholds,
            self.check_signing,
            self.check_recipients,
            self.check_destination,
            self.check_staging,
        ):
            results = check()
            report.checks.extend(results)
            for result in results:
                level = logging.INFO if result.passed else logging.ERROR
                logger.log(
                    level, "config-test %s %s: %s",
                    result.category, result.identifier or "-",
                    "ok" if result.passed else result.detail,
                )
        return report

    def check_thresholds(self) -> list[CheckResult]:
        try:
            check_thresholds(self.config.sources)
        except ConfigError as exc:
            return [CheckResult(category="thresholds", passed=False, detail=str(exc))]
        return [CheckResult(category="thresholds", passed=True)]

    def check_signing(self) -> list[CheckResult]:
        signing = self.config.signing_key
        if signing is None:
            return [CheckResult(category="signing", passed=False, detail="no signing key configured")]
        try:
            signature = self.keystore.sign(PROBE_PAYLOAD, signing.key_id, signing.passphrase)
            verified = self.keystore.verify(PROBE_PAYLOAD, signature, signing.key_id)
        except KeyStoreError as exc:
            return [CheckResult(
                category="signing", passed=False, identifier=signing.key_id, detail=str(exc)
            )]
        if not verified:
            return [CheckResult(
                category="signing", passed=False, identifier=signing.key_id,
                detail="signature did not verify",
            )]
        return [CheckResult(category="signing", passed=True, identifier=signing.key_id)]

    def check_recipients(self) -> list[CheckResult]:
        try:
            check_layers(self.config.recipients)
        except ConfigError as exc:
            return [CheckResult(category="recipients", passed=False, detail=str(exc))]

        results = []
        for index, layer in enumerate(self.config.recipients, start=1):
            for key_id in layer:
                try:
                    fingerprint = self.keystore.resolve(key_id)
                except KeyStoreError as exc:
                    results.append(CheckResult(
                        category="recipients", passed=False, identifier=key_id,
                        detail=f"layer {index}: {exc}",
                    ))
                    continue
                results.append(CheckResult(
                    category="recipients", passed=True, identifier=key_id,
                    detail=f"layer {index}: {fingerprint}",
                ))
        return results

    def check_destination(self) -> list[CheckResult]:
        target = self.config.sync
        if not target.enabled:
            return [CheckResult(
                category="destination", passed=True,
                detail="no destination configured; sync and purge disabled",
            )]
        try:
            SyncDispatcher(
                target, self.config.staging_dir, ledger=None,
                timeout=self.config.operation_timeout_seconds,
            ).probe()
        except ArchiveError as exc:
            return [CheckResult(
                category="destination", passed=False,
                identifier=target.destination, detail=str(exc),
            )]
        return [CheckResult(category="destination", passed=True, identifier=target.destination)]

    def check_staging(self) -> list[CheckResult]:
        staging = Path(self.config.staging_dir)
        if staging.is_dir():
            if os.access(staging, os.W_OK | os.X_OK):
                return [CheckResult(category="staging", passed=True, identifier=str(staging))]
            return [CheckResult(
                category="staging", passed=False, identifier=str(staging), detail="not writable",
            )]
        if staging.exists():
            return [CheckResult(
                category="staging", passed=False, identifier=str(staging), detail="not a directory",
            )]

        parent = staging.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        if parent.is_dir() and os.access(parent, os.W_OK | os.X_OK):
            return [CheckResult(
                category="staging", passed=True, identifier=str(staging),
                detail=f"will be created under {parent}",
            )]
        return [CheckResult(
            category="staging", passed=False, identifier=str(staging),
            detail=f"cannot be created: {parent} is not writable",
        )]
