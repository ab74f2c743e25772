"""
Fleet-wide upgrade and recreate runs across every instance of an offering.
"""

import json
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from errors import FatalInstanceError, TransientInstanceError
from models import (
    FleetOperationRecord,
    FleetReport,
    Instance,
    InstanceStatus,
)
from operation_token import OperationToken
from triggerer import BrokerTriggerer

logger = logging.getLogger(__name__)

WorkItem = Tuple[Instance, FleetOperationRecord]


class FleetIterator:
    """Runs one management operation over a fleet of service instances.

    Canaries go first, one phase at a time; the rest are drained from a
    queue by at most ``max_in_flight`` workers. Every instance is triggered
    and then polled until its operation is terminal.
    """

    def __init__(
        self,
        inventory: Any,
        triggerer: BrokerTriggerer,
        offering_id: str = "",
        canary_count: int = 0,
        max_in_flight: int = 1,
        attempt_interval: float = 60.0,
        max_attempts: int = 5,
        poll_interval: float = 10.0,
        instance_timeout: Optional[float] = None,
        total_timeout: Optional[float] = None,
        report_file: Optional[str] = None,
    ):
        """
        Initialize the fleet iterator.

        Args:
            inventory: Anything with list_instances(offering_id)
            triggerer: Starts and checks the operation on one instance
            offering_id: Service offering whose instances are processed
            canary_count: Instances processed first; a failure halts the run
            max_in_flight: Maximum operations running at the same time
            attempt_interval: Seconds between attempts on a busy instance
            max_attempts: Attempts per instance before it is marked failed
            poll_interval: Seconds between status checks
            instance_timeout: Seconds one instance may take, None for no limit
            total_timeout: Seconds the whole run may take, None for no limit
            report_file: Where to write the JSON report, None to skip it

        Raises:
            ValueError: If a limit is out of range
        """
        if canary_count < 0:
            raise ValueError("the number of canaries cannot be negative")
        if max_in_flight < 1:
            raise ValueError("the max in flight must be greater than zero")
        if max_attempts < 1:
            raise ValueError("the number of attempts must be greater than zero")
        if attempt_interval < 0 or poll_interval < 0:
            raise ValueError("intervals cannot be negative")

        self.inventory = inventory
        self.triggerer = triggerer
        self.offering_id = offering_id
        self.canary_count = canary_count
        self.max_in_flight = max_in_flight
        self.attempt_interval = attempt_interval
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.instance_timeout = instance_timeout
        self.total_timeout = total_timeout
        self.report_file = report_file

        self.stats: Dict[str, int] = {}
        self.report: Optional[FleetReport] = None

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._halt = threading.Event()
        self._deadline: Optional[float] = None
        self._stop_reason = "fleet run stopped"
        self._total = 0
        self._started = 0

    def stop(self, reason: str = "fleet run stopped") -> None:
        """Stop starting new instances and abandon in-flight ones after one last check."""
        with self._lock:
            if not self._stop.is_set():
                self._stop_reason = reason
        self._stop.set()

    def run(self) -> FleetReport:
        """
        Process every instance of the offering.

        Returns:
            FleetReport with one record per instance
        """
        start = time.time()
        if self.total_timeout:
            self._deadline = time.monotonic() + self.total_timeout

        logger.info("=" * 70)
        logger.info(f"Fleet {self.triggerer.operation_type.value.upper()}")
        logger.info("=" * 70)
        logger.info(f"Service offering: {self.offering_id or 'N/A'}")
        logger.info(f"Canaries: {self.canary_count}")
        logger.info(f"Max in flight: {self.max_in_flight}")
        logger.info(f"Attempts per instance: {self.max_attempts}")
        logger.info(f"Attempt interval: {self.attempt_interval}s")
        logger.info(f"Poll interval: {self.poll_interval}s")
        logger.info(f"Timeout per instance: {self.instance_timeout or 'none'}")
        logger.info(f"Total timeout: {self.total_timeout or 'none'}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

        instances = self.inventory.list_instances(self.offering_id)
        records = [
            FleetOperationRecord(
                instance_guid=inst.guid,
                plan_id=inst.plan_id,
                is_canary=index < self.canary_count,
            )
            for index, inst in enumerate(instances)
        ]
        items: List[WorkItem] = list(zip(instances, records))
        self.report = FleetReport(records=records, start_time=start)
        self._total = len(items)
        self.stats = {"total": len(items), "succeeded": 0, "skipped": 0, "failed": 0}

        canaries = items[: self.canary_count]
        rest = items[self.canary_count :]

        try:
            if canaries:
                logger.info(f"STARTING CANARIES: {len(canaries)} canaries")
                self._run_phase(canaries, halt_on_failure=True)
                if any(r.status == InstanceStatus.FAILED for _, r in canaries):
                    self.report.canary_failed = True
                    logger.error("Canaries didn't succeed, halting the run")
                else:
                    logger.info("FINISHED CANARIES")

            if rest and not self.report.canary_failed and not self._should_stop():
                workers = min(self.max_in_flight, len(rest))
                logger.info(f"STARTING OPERATION with {workers} concurrent workers")
                self._run_phase(rest, halt_on_failure=False)

            if self._stop.is_set():
                for record in records:
                    if record.status == InstanceStatus.PENDING:
                        self._finish(
                            record,
                            InstanceStatus.FAILED,
                            f"{self._stop_reason} before the operation started",
                        )
        finally:
            self.report.end_time = time.time()
            self.report.stopped = self._stop.is_set()

        status = "SUCCESS" if self.report.success else "FAILED"
        summary = ", ".join(f"{k}: {v}" for k, v in self.report.stats().items())
        logger.info(f"FINISHED PROCESSING Status: {status}; Summary: {summary}")

        self._print_report()
        if self.report_file:
            self._export_results_json(self.report_file)
        return self.report

    def _run_phase(self, items: List[WorkItem], halt_on_failure: bool) -> None:
        work: "queue.Queue[WorkItem]" = queue.Queue()
        for item in items:
            work.put(item)

        workers = min(self.max_in_flight, len(items))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fleet")
        futures = [
            pool.submit(self._worker, work, halt_on_failure) for _ in range(workers)
        ]
        try:
            for future in futures:
                future.result()
        except KeyboardInterrupt:
            logger.warning(
                "Interrupted, waiting for in-flight operations to be recorded..."
            )
            self.stop("fleet run interrupted")
        finally:
            pool.shutdown(wait=True)

    def _worker(self, work: "queue.Queue[WorkItem]", halt_on_failure: bool) -> None:
        while True:
            try:
                instance, record = work.get_nowait()
            except queue.Empty:
                return
            if self._halt.is_set() or self._should_stop():
                continue
            self._process(instance, record)
            if halt_on_failure and record.status == InstanceStatus.FAILED:
                self._halt.set()

    def _process(self, instance: Instance, record: FleetOperationRecord) -> None:
        with self._lock:
            self._started += 1
            number = self._started
            record.status = InstanceStatus.IN_PROGRESS
            record.start_time = time.time()
        logger.info(
            f"[{instance.guid}] Starting to process service instance {number} of {self._total}"
        )

        instance_deadline = (
            time.monotonic() + self.instance_timeout if self.instance_timeout else None
        )

        for attempt in range(1, self.max_attempts + 1):
            record.attempts = attempt
            try:
                op = self.triggerer.trigger(instance)
                if op.status == InstanceStatus.SKIPPED:
                    self._finish(record, InstanceStatus.SKIPPED, op.description)
                    return
                record.task_id = op.token.backend_task_id
                self._poll_until_terminal(instance, record, op.token, instance_deadline)
                return
            except FatalInstanceError as e:
                self._finish(record, InstanceStatus.FAILED, str(e))
                return
            except TransientInstanceError as e:
                record.last_error = str(e)
                if attempt >= self.max_attempts:
                    self._finish(
                        record,
                        InstanceStatus.FAILED,
                        f"{e} (gave up after {attempt} attempts)",
                    )
                    return
                logger.warning(
                    f"[{instance.guid}] Attempt {attempt}/{self.max_attempts} failed: {e}, "
                    f"retrying in {self.attempt_interval}s"
                )
                if self._wait(self.attempt_interval):
                    self._finish(
                        record,
                        InstanceStatus.FAILED,
                        f"{self._stop_reason} after attempt {attempt}: {e}",
                    )
                    return
                if instance_deadline and time.monotonic() >= instance_deadline:
                    self._finish(
                        record,
                        InstanceStatus.FAILED,
                        f"timed out after {self.instance_timeout}s: {e}",
                    )
                    return
            except Exception as e:
                logger.exception(f"[{instance.guid}] Unexpected error: {e}")
                self._finish(record, InstanceStatus.FAILED, str(e))
                return

    def _poll_until_terminal(
        self,
        instance: Instance,
        record: FleetOperationRecord,
        token: OperationToken,
        instance_deadline: Optional[float],
    ) -> None:
        failed_checks = 0
        while True:
            stopped = self._should_stop()
            timed_out = (
                instance_deadline is not None and time.monotonic() >= instance_deadline
            )

            op = None
            try:
                op = self.triggerer.check(instance, token)
                failed_checks = 0
            except TransientInstanceError as e:
                failed_checks += 1
                logger.warning(f"[{instance.guid}] Status check {failed_checks} failed: {e}")
                if failed_checks >= self.max_attempts:
                    self._finish(
                        record,
                        InstanceStatus.FAILED,
                        f"{e} (task {token.backend_task_id}, {failed_checks} failed status checks)",
                    )
                    return

            if op is not None and op.status == InstanceStatus.SUCCEEDED:
                self._finish(record, InstanceStatus.SUCCEEDED, op.description)
                return

            if stopped or timed_out:
                cause = (
                    self._stop_reason
                    if stopped
                    else f"timed out after {self.instance_timeout}s"
                )
                self._finish(
                    record,
                    InstanceStatus.FAILED,
                    f"{cause} while waiting for task {token.backend_task_id}",
                )
                return

            self._wait(self.poll_interval)

    def _should_stop(self) -> bool:
        if (
            self._deadline is not None
            and not self._stop.is_set()
            and time.monotonic() >= self._deadline
        ):
            self.stop(f"fleet run timed out after {self.total_timeout}s")
        return self._stop.is_set()

    def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when the run was stopped meanwhile."""
        if self._deadline is not None:
            seconds = max(0.0, min(seconds, self._deadline - time.monotonic()))
        self._stop.wait(seconds)
        return self._should_stop()

    def _finish(
        self,
        record: FleetOperationRecord,
        status: InstanceStatus,
        detail: Optional[str] = None,
    ) -> None:
        with self._lock:
            record.status = status
            record.end_time = time.time()
            if status == InstanceStatus.SUCCEEDED:
                record.last_error = None
            elif detail:
                record.last_error = detail
            self.stats[status.value] = self.stats.get(status.value, 0) + 1

        if status == InstanceStatus.FAILED:
            logger.error(f"[{record.instance_guid}] FAILED: {detail}")
        elif status == InstanceStatus.SKIPPED:
            logger.info(f"[{record.instance_guid}] Skipped: {detail}")
        else:
            logger.info(f"[{record.instance_guid}] Succeeded")

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m {seconds % 60:.0f}s"
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m {seconds % 60:.0f}s"

    def _print_report(self):
        """Log timing, statistics and per-instance outcomes."""
        report = self.report
        total_duration = report.end_time - report.start_time

        logger.info("")
        logger.info("=" * 70)
        logger.info(f"FLEET {self.triggerer.operation_type.value.upper()} REPORT")
        logger.info("=" * 70)

        logger.info("")
        logger.info("TIMING SUMMARY")
        logger.info("-" * 40)
        logger.info(
            f"Start time:      {datetime.fromtimestamp(report.start_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(
            f"End time:        {datetime.fromtimestamp(report.end_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(f"Total duration:  {self._format_duration(total_duration)}")

        logger.info("")
        logger.info("STATISTICS")
        logger.info("-" * 40)
        for k, v in report.stats().items():
            logger.info(f"{k:20s}: {v}")

        succeeded = report.by_status(InstanceStatus.SUCCEEDED)
        failed = report.by_status(InstanceStatus.FAILED)
        skipped = report.by_status(InstanceStatus.SKIPPED)
        pending = report.by_status(InstanceStatus.PENDING)

        if succeeded:
            logger.info("")
            logger.info("SUCCEEDED INSTANCES")
            logger.info("-" * 40)
            logger.info(f"{'Instance':<38} {'Attempts':<10} {'Duration'}")
            logger.info("-" * 70)
            for r in succeeded:
                duration = (
                    self._format_duration(r.duration_seconds)
                    if r.duration_seconds is not None
                    else "N/A"
                )
                logger.info(f"{r.instance_guid:<38} {r.attempts:<10} {duration}")

        if failed:
            logger.info("")
            logger.info("FAILED INSTANCES")
            logger.info("-" * 40)
            logger.info(f"{'Instance':<38} {'Canary':<8} {'Error'}")
            logger.info("-" * 70)
            for r in failed:
                canary = "Yes" if r.is_canary else "No"
                logger.info(f"{r.instance_guid:<38} {canary:<8} {r.last_error or 'Unknown'}")

        if skipped:
            logger.info("")
            logger.info("SKIPPED INSTANCES")
            logger.info("-" * 40)
            for r in skipped:
                logger.info(f"{r.instance_guid:<38} {r.last_error or 'Unknown'}")

        if pending:
            logger.info("")
            logger.info("NOT STARTED")
            logger.info("-" * 40)
            for r in pending:
                logger.info(f"  {r.instance_guid}")

        logger.info("")
        logger.info("=" * 70)

    def _export_results_json(self, filename: str):
        """Export the report to a JSON file for further processing."""
        report = self.report
        data = {
            "operation": self.triggerer.operation_type.value,
            "service_offering": self.offering_id,
            "success": report.success,
            "canary_failed": report.canary_failed,
            "stopped": report.stopped,
            "start_time": datetime.fromtimestamp(report.start_time).isoformat(),
            "end_time": datetime.fromtimestamp(report.end_time).isoformat(),
            "total_duration_seconds": report.end_time - report.start_time,
            "statistics": report.stats(),
            "results": [
                {
                    "instance_guid": r.instance_guid,
                    "plan_id": r.plan_id,
                    "status": r.status.value,
                    "is_canary": r.is_canary,
                    "attempts": r.attempts,
                    "task_id": r.task_id,
                    "duration_seconds": r.duration_seconds,
                    "error_message": r.last_error,
                }
                for r in report.records
            ],
        }

        with open(filename, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
