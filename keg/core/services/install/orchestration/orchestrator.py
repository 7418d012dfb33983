"""
L5 Orchestration — one install run, end to end.

    PENDING → VERIFYING → EXTRACTING → INSTALLING → INSTALLED
                                                  ↘ ROLLED_BACK (from any stage)

The whole run holds the destination lock. Artifact bytes only reach
the extractor after the digest check; staged files only reach the
prefix through the installer, which reverts everything on failure.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from pathlib import Path

from keg.core.config.settings import Settings
from keg.core.errors import KegError, NotInstalledError
from keg.core.models.layout import InstallLayout
from keg.core.models.manifest import DestinationCategory, Manifest
from keg.core.models.receipt import InstalledFile, Receipt
from keg.core.models.report import AppliedStep, InstallReport, InstallState, SmokeTestResult
from keg.core.persistence.install_log import InstallLog, InstallLogEntry, ReceiptStore
from keg.core.persistence.lock import destination_lock
from keg.core.reliability.backoff import RetryPolicy
from keg.core.services.install.execution.extract import extract
from keg.core.services.install.execution.fetch import fetch_in_background
from keg.core.services.install.execution.installer import apply
from keg.core.services.install.execution.smoke import run_smoke_test
from keg.core.services.install.execution.verify import file_digest

logger = logging.getLogger(__name__)

Fetcher = Callable[[Manifest, Settings], bytes]


def default_fetcher(manifest: Manifest, settings: Settings) -> bytes:
    """Download and verify the artifact with the configured retry policy."""
    cfg = settings.fetch
    policy = RetryPolicy(
        max_attempts=cfg.max_attempts,
        base_delay=cfg.base_delay,
        max_delay=cfg.max_delay,
    )
    return fetch_in_background(
        manifest.url,
        manifest.digest,
        deadline=cfg.deadline,
        policy=policy,
        timeout=cfg.timeout,
    )


def install_manifest(
    manifest: Manifest,
    settings: Settings,
    *,
    run_test: bool = True,
    fetcher: Fetcher | None = None,
) -> InstallReport:
    """Install ``manifest`` under ``settings.prefix``.

    Args:
        manifest: Parsed package manifest.
        settings: Resolved settings (prefix, state dir, timeouts).
        run_test: Run the smoke test after a successful install.
        fetcher: Replaces the network fetch (must verify the digest).

    Returns:
        Report in state INSTALLED. A failed smoke test is recorded on
        the report, not raised.

    Raises:
        KegError: Any fatal error, with the manifest name attached.
            The report reached ROLLED_BACK and the prefix is as it was.
    """
    layout = settings.install_layout()
    report = InstallReport(name=manifest.name, version=manifest.version, prefix=layout.prefix)
    receipts = ReceiptStore(settings.receipts_dir)
    history = InstallLog(settings.install_log_path)
    fetch = fetcher or default_fetcher
    scratch = settings.resolved_state_dir / "tmp"

    logger.info(
        "Installing %s %s into %s", manifest.name, manifest.version or "", layout.prefix,
    )

    try:
        with destination_lock(layout.prefix, settings.locks_dir, timeout=settings.lock_timeout):
            report.missing_dependencies = find_missing_dependencies(manifest, receipts)

            report.transition(InstallState.VERIFYING)
            data = fetch(manifest, settings)

            report.transition(InstallState.EXTRACTING)
            with extract(
                data, artifact_name=manifest.artifact_name, staging_parent=scratch,
            ) as staged:
                report.transition(InstallState.INSTALLING)
                apply(
                    staged,
                    manifest.install,
                    layout,
                    report=report,
                    backup_parent=scratch,
                    commit=lambda applied: receipts.save(
                        build_receipt(manifest, layout, applied, report.operation_id)
                    ),
                )

            report.transition(InstallState.INSTALLED)
    except BaseException as exc:
        if isinstance(exc, KegError):
            exc.with_context(manifest_name=manifest.name)
        report.error = str(exc) or type(exc).__name__
        report.transition(InstallState.ROLLED_BACK)
        logger.warning("Install of %s rolled back: %s", manifest.name, report.error)
        _log_run(history, manifest, report)
        raise

    for dep in report.missing_dependencies:
        logger.warning("%s: run dependency '%s' not found", manifest.name, dep)

    if run_test:
        report.smoke_test = smoke_test_manifest(manifest, layout, settings)

    _log_run(history, manifest, report)
    logger.info(
        "Installed %s: %d files (%d unchanged) in %d ms",
        manifest.name, len(report.steps),
        sum(1 for s in report.steps if s.unchanged), report.duration_ms,
    )
    return report


def find_missing_dependencies(manifest: Manifest, receipts: ReceiptStore) -> list[str]:
    """Run dependencies found neither on PATH nor among installed receipts."""
    missing = []
    for dep in manifest.run_dependencies:
        if shutil.which(dep) is None and receipts.load(dep) is None:
            missing.append(dep)
    if manifest.build_dependencies:
        logger.debug(
            "%s: ignoring build dependencies %s (prebuilt artifact)",
            manifest.name, ", ".join(manifest.build_dependencies),
        )
    return missing


def build_receipt(
    manifest: Manifest,
    layout: InstallLayout,
    applied: list[AppliedStep],
    operation_id: str,
) -> Receipt:
    files = [
        InstalledFile(
            path=layout.relative(step.destination),
            category=step.step.category.value,
            sha256=file_digest(step.destination),
        )
        for step in applied
    ]
    binary = manifest.smoke_binary()
    test_binary = None
    if binary is not None:
        test_binary = layout.relative(layout.directory_for(DestinationCategory.BIN) / binary)
    return Receipt(
        name=manifest.name,
        version=manifest.version,
        url=manifest.url,
        digest=str(manifest.digest),
        prefix=str(layout.prefix),
        operation_id=operation_id,
        files=files,
        test_binary=test_binary,
        test_args=list(manifest.test.args),
    )


def smoke_test_manifest(
    manifest: Manifest,
    layout: InstallLayout,
    settings: Settings,
) -> SmokeTestResult | None:
    binary = manifest.smoke_binary()
    if binary is None:
        logger.info("%s: no binary to smoke test", manifest.name)
        return None
    path = layout.directory_for(DestinationCategory.BIN) / binary
    return run_smoke_test(path, manifest.test.args, timeout=settings.smoke_timeout)


def smoke_test_installed(name: str, settings: Settings) -> SmokeTestResult | None:
    """Re-run the smoke test recorded in an installed package's receipt.

    Returns None when the package installed no binary.

    Raises:
        NotInstalledError: No receipt for ``name``.
    """
    receipt = ReceiptStore(settings.receipts_dir).load(name)
    if receipt is None:
        raise NotInstalledError(f"Package '{name}' is not installed", manifest_name=name)
    if receipt.test_binary is None:
        return None
    return run_smoke_test(
        Path(receipt.prefix) / receipt.test_binary,
        receipt.test_args,
        timeout=settings.smoke_timeout,
    )


def _log_run(history: InstallLog, manifest: Manifest, report: InstallReport) -> None:
    context: dict = {"history": [s.value for s in report.history]}
    if report.missing_dependencies:
        context["missing_dependencies"] = report.missing_dependencies
    if report.smoke_test is not None:
        context["smoke_test"] = {
            "ok": report.smoke_test.ok,
            "returncode": report.smoke_test.returncode,
        }
    history.write(
        InstallLogEntry(
            operation_id=report.operation_id,
            operation="install",
            package=manifest.name,
            version=manifest.version,
            prefix=str(report.prefix or ""),
            status=report.state.value,
            steps_total=len(manifest.install),
            steps_applied=sum(1 for s in report.steps if s.written),
            duration_ms=report.duration_ms,
            files=[str(p) for p in report.installed_files],
            errors=[report.error] if report.error else [],
            context=context,
        )
    )
