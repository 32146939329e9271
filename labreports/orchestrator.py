"""Lab Reports Pipeline Orchestrator.

This script runs the continuous report delivery loop: every interval it
pulls the registrations queued for delivery and takes each one, in order,
through report generation, convergence, merging, WhatsApp delivery and the
final status update.

**Error Handling Philosophy:**

- **Infrastructure Errors** (missing or invalid config, database pool
  creation) fail fast:
  - The scheduler exits with code 1 after releasing the lock

- **Registration Errors** (report engine failure, PDFs never converging,
  merge failure, status update failure) are recovered per registration:
  - The failure is logged with the registration key and stage
  - The registration stays queued and is retried by a later batch
  - The remaining registrations of the batch continue

- **Delivery Errors** are best-effort:
  - Logged as warnings; the registration is still marked processed because
    its report has already been generated

**Exit Codes:**
- 0: Another live instance holds the lock, or the loop was stopped by a signal
- 1: Startup failed (configuration or database initialization)
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import oracledb
import yaml

from .cleanup import cleanup_stale_outputs
from .config_loader import DEFAULT_CONFIG_PATH, load_config
from .convergence import ConvergenceWaiter
from .data_models import BatchSummary, RegistrationOutcome, ReportJob
from .database import close_pool, create_pool
from .delivery import DeliveryClient
from .enums import ItemKind, RegistrationStatus, SchedulerState
from .exceptions import (
    ConvergenceTimeout,
    DeliveryError,
    PersistenceError,
    PipelineError,
    ShutdownRequested,
)
from .logging_config import configure_logging
from .merge_pdfs import ArtifactMerger
from .prepare_output import move_reports, patient_folder_name, prepare_patient_folder
from .process_lock import ProcessLock
from .registration_source import RegistrationSource
from .report_invoker import ReportInvoker
from .state_transitioner import StateTransitioner
from .utils import DEFAULT_COUNTRY_CODE, format_phone_number

LOG = logging.getLogger(__name__)


@dataclass
class PipelineComponents:
    """Collaborators used to process one registration."""

    source: RegistrationSource
    invoker: ReportInvoker
    waiter: ConvergenceWaiter
    merger: ArtifactMerger
    delivery: Optional[DeliveryClient]
    transitioner: StateTransitioner


def build_components(config: Dict[str, Any], pool) -> PipelineComponents:
    """Wire the production collaborators from configuration."""
    delivery = None
    if config.get("bird", {}).get("access_key"):
        delivery = DeliveryClient.from_config(config)
    else:
        LOG.warning("bird.access_key is not configured; WhatsApp delivery is disabled")

    return PipelineComponents(
        source=RegistrationSource(pool),
        invoker=ReportInvoker.from_config(config),
        waiter=ConvergenceWaiter.from_config(config),
        merger=ArtifactMerger.from_config(config),
        delivery=delivery,
        transitioner=StateTransitioner.from_config(config),
    )


class BatchScheduler:
    """Single-instance batch loop owning the lock, the pool and the components.

    Parameters
    ----------
    config : Dict[str, Any]
        Validated configuration (result of load_config).
    lock : ProcessLock
        Cross-instance lock on the results folder.
    pool_factory : Callable
        Creates the read-query connection pool from config.
    components_factory : Callable
        Builds the pipeline collaborators from config and pool.
    once : bool
        Run a single batch and return instead of looping.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        lock: ProcessLock,
        *,
        pool_factory: Callable[[Dict[str, Any]], Any] = create_pool,
        components_factory: Callable[[Dict[str, Any], Any], PipelineComponents] = build_components,
        once: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.lock = lock
        self.once = once
        self.pool = None
        self.components: Optional[PipelineComponents] = None
        self.state = SchedulerState.IDLE
        self._pool_factory = pool_factory
        self._components_factory = components_factory
        self._clock = clock
        self._stop = threading.Event()
        self._original_handlers: Dict[int, Any] = {}
        self._shut_down = False

        processing = config.get("processing", {})
        self.results_folder = Path(config["paths"]["results_folder"])
        self.reports_path = Path(config["paths"]["reports_path"])
        self.batch_interval = processing.get("batch_interval_seconds", 120)
        self.convergence_timeout = processing.get("convergence_timeout_seconds", 30)
        self.settle_delay = processing.get("settle_delay_seconds", 2)
        self.mtime_tolerance = processing.get("mtime_tolerance_seconds", 2)
        self.country_code = config.get("phone", {}).get("default_country_code", DEFAULT_COUNTRY_CODE)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def run(self) -> int:
        """Acquire the lock and process batches until stopped.

        Returns
        -------
        int
            Process exit code.
        """
        if not self.lock.try_acquire():
            LOG.warning("Another instance is already running. Exiting.")
            return 0
        self.state = SchedulerState.LOCK_ACQUIRED

        try:
            self._install_signal_handlers()
            try:
                self.pool = self._pool_factory(self.config)
            except oracledb.Error as exc:
                LOG.error("Database initialization failed: %s", exc)
                return 1
            self.components = self._components_factory(self.config, self.pool)

            while not self._stop.is_set():
                try:
                    summary = self.process_batch()
                except ShutdownRequested:
                    break
                except Exception as exc:
                    LOG.exception("Error in processing loop: %s", exc)
                    summary = None

                if self.once or self._stop.is_set():
                    break

                self.state = SchedulerState.SLEEPING
                self._heartbeat()
                if summary is not None and summary.outcomes:
                    LOG.info("Waiting %s seconds before next batch...", self.batch_interval)
                else:
                    LOG.info("No records to process. Waiting %s seconds before next check...", self.batch_interval)
                self._stop.wait(self.batch_interval)
            return 0
        finally:
            self.shutdown()

    def request_stop(self) -> None:
        """Finish the current stage, then skip to shutdown."""
        self._stop.set()

    def shutdown(self) -> None:
        """Release the lock and close resources; runs once."""
        if self._shut_down:
            return
        self._shut_down = True
        self.state = SchedulerState.SHUTTING_DOWN
        self._restore_signal_handlers()
        try:
            if self.components is not None and self.components.delivery is not None:
                self.components.delivery.close()
            close_pool(self.pool)
        finally:
            self.pool = None
            self.lock.release()

    # ── Batch ─────────────────────────────────────────────────────────────────

    def process_batch(self) -> BatchSummary:
        """Process every eligible registration once, one at a time."""
        self.state = SchedulerState.POLLING
        LOG.info("Starting batch processing...")
        summary = BatchSummary()

        reg_keys = self.components.source.list_eligible()
        LOG.info("Found %s unprocessed registrations: %s", len(reg_keys), ", ".join(reg_keys))
        if not reg_keys:
            LOG.info("No unprocessed registrations found in this batch")
            return summary

        self.state = SchedulerState.PROCESSING_BATCH
        for reg_key in reg_keys:
            self._heartbeat()
            self._check_stop()
            LOG.info("=== Processing Registration: %s ===", reg_key)
            try:
                outcome = self.process_registration(reg_key)
                LOG.info("=== Completed Registration: %s ===", reg_key)
            except ShutdownRequested:
                raise
            except PersistenceError as exc:
                LOG.error(
                    "Registration %s stays queued; it will be regenerated and re-sent "
                    "on the next batch: %s",
                    reg_key,
                    exc,
                )
                outcome = RegistrationOutcome(reg_key, RegistrationStatus.FAILED, error=str(exc))
            except PipelineError as exc:
                LOG.error(
                    "Failed to process registration %s at %s stage: %s",
                    reg_key,
                    exc.stage,
                    exc.message,
                )
                outcome = RegistrationOutcome(reg_key, RegistrationStatus.FAILED, error=str(exc))
            except Exception as exc:
                LOG.exception("Error processing registration %s: %s", reg_key, exc)
                outcome = RegistrationOutcome(reg_key, RegistrationStatus.FAILED, error=str(exc))
            summary.outcomes.append(outcome)

        LOG.info(
            "Batch processing completed. Processed %s registrations, %s failed.",
            summary.processed,
            summary.failed,
        )
        if summary.undelivered:
            LOG.warning(
                "Processed without WhatsApp delivery: %s", ", ".join(summary.undelivered)
            )
        return summary

    # ── Registration ──────────────────────────────────────────────────────────

    def plan_jobs(self, reg_key: str) -> List[ReportJob]:
        """List the reports to render: group codes first, then mega codes."""
        source = self.components.source
        reports = self.config.get("reports", {})
        printed_by = reports.get("printed_by", "")
        group_template = self.reports_path / reports.get("group_template", "new_test.rep")

        group_codes = source.get_group_codes(reg_key)
        LOG.info("Found %s group codes: %s", len(group_codes), ", ".join(group_codes))
        jobs = [
            ReportJob(group_template, reg_key, code, printed_by, ItemKind.GROUP)
            for code in group_codes
        ]

        mega_codes = source.get_mega_codes(reg_key)
        LOG.info("Found %s mega codes: %s", len(mega_codes), ", ".join(mega_codes))
        for code in mega_codes:
            rep_type = source.resolve_mega_template(code)
            if not rep_type:
                LOG.warning("No report type found for mega code: %s", code)
                continue
            jobs.append(
                ReportJob(self.reports_path / f"{rep_type}.rep", reg_key, code, printed_by, ItemKind.MEGA)
            )
        return jobs

    def process_registration(self, reg_key: str) -> RegistrationOutcome:
        """Take one registration through every stage.

        Raises
        ------
        PipelineError
            Any stage failure except delivery; the registration is not marked.
        ShutdownRequested
            When a termination signal arrived before a costly stage.
        """
        components = self.components
        LOG.info("Processing registration: %s", reg_key)

        cleanup_stale_outputs(self.results_folder)
        started_at = self._clock()

        jobs = self.plan_jobs(reg_key)
        for job in jobs:
            self._heartbeat()
            self._check_stop()
            components.invoker.invoke(job.template_path, job.parameters())

        expected = len(jobs)
        groups = sum(1 for job in jobs if job.kind is ItemKind.GROUP)
        LOG.info(
            "Expected %s PDF files (%s group + %s mega)", expected, groups, expected - groups
        )

        generated: List[str] = []
        if expected:
            self._heartbeat()
            self._check_stop()
            self._stop.wait(self.settle_delay)
            generated = components.waiter.wait_for(
                expected, self.convergence_timeout, started_at - self.mtime_tolerance
            )
            if not generated:
                LOG.warning("Main folder contains: %s", ", ".join(self._folder_listing()))
                raise ConvergenceTimeout(
                    f"{expected} PDF(s) did not stabilize within {self.convergence_timeout}s",
                    reg_key=reg_key,
                )
            LOG.info("Found %s PDF files: %s", len(generated), ", ".join(generated))
        else:
            LOG.warning("No reports were queued for registration %s", reg_key)

        raw_phone = components.source.get_contact_phone(reg_key)
        phone = format_phone_number(raw_phone, self.country_code) if raw_phone else None
        if raw_phone:
            LOG.info("Patient phone: %s -> %s", raw_phone, phone)

        folder = prepare_patient_folder(self.results_folder, patient_folder_name(reg_key, phone))
        move_reports(self.results_folder, generated, folder)
        LOG.info("Moved %s PDF files to patient folder %s", len(generated), folder)

        artifact = components.merger.merge(folder)

        delivered = self._deliver(reg_key, raw_phone, phone, artifact)

        LOG.info("About to update database for reg_key: %s", reg_key)
        components.transitioner.mark_processed(reg_key)
        LOG.info("Registration %s processed successfully", reg_key)
        return RegistrationOutcome(
            reg_key, RegistrationStatus.PROCESSED, artifact_path=artifact, delivered=delivered
        )

    def _deliver(self, reg_key: str, raw_phone: Optional[str], phone: Optional[str], artifact: Path) -> bool:
        delivery = self.components.delivery
        if not raw_phone:
            LOG.warning("No patient phone found for reg_key: %s, skipping WhatsApp", reg_key)
            return False
        if phone is None:
            LOG.warning("Invalid phone number format: %s, skipping WhatsApp", raw_phone)
            return False
        if delivery is None:
            LOG.warning("WhatsApp delivery disabled, not sending report for reg_key: %s", reg_key)
            return False
        try:
            delivery.deliver(phone, artifact)
        except DeliveryError as exc:
            LOG.warning("WhatsApp sending failed for reg_key %s: %s", reg_key, exc)
            return False
        return True

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise ShutdownRequested()

    def _heartbeat(self) -> None:
        if not self.lock.acquired:
            return
        try:
            owned = self.lock.refresh()
        except OSError as exc:
            LOG.warning("Failed to refresh process lock: %s", exc)
            return
        if not owned:
            LOG.error("Process lock is no longer ours; stopping after the current stage")
            self.request_stop()

    def _folder_listing(self) -> List[str]:
        try:
            return sorted(child.name for child in self.results_folder.iterdir())
        except OSError as exc:
            return [f"<unreadable: {exc}>"]

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._original_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, self._signal_handler)

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    def _signal_handler(self, sig: int, frame) -> None:  # pragma: no cover - requires signal
        LOG.warning("Received signal %s; finishing current stage before shutdown", sig)
        self.request_stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the lab report delivery pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s
  %(prog)s --config /etc/labreports/parameters.yaml --once
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        dest="config_path",
        help=f"Configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process a single batch and exit instead of looping",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the pipeline orchestrator."""
    args = parse_args(argv)

    try:
        config = load_config(args.config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logging_config = config.get("logging", {})
    configure_logging(
        Path(config["paths"].get("logs_folder", "logs")),
        level=logging_config.get("level", "INFO"),
        backup_count=logging_config.get("backup_count", 30),
    )
    mode = "single batch" if args.once else "continuous mode"
    LOG.info("Starting lab reports processor (%s)...", mode)

    lock = ProcessLock.for_results_folder(
        Path(config["paths"]["results_folder"]),
        config.get("processing", {}).get("lock_stale_seconds", 300),
    )
    scheduler = BatchScheduler(config, lock, once=args.once)
    return scheduler.run()


if __name__ == "__main__":
    raise SystemExit(main())
