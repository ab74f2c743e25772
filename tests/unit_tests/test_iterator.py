"""
Unit tests for FleetIterator.
"""

import json
import os
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock

from broker import BrokerCore
from errors import FatalInstanceError, TransientInstanceError
from gateways import DeploymentGateway, ManifestGenerator
from iterator import FleetIterator
from models import Instance, InstanceStatus, Plan, ServiceOffering, Task, TaskState
from operation_token import OperationToken, OperationType
from triggerer import BrokerTriggerer, TriggeredOperation


class FakeTriggerer:
    """Triggerer double that records concurrency and scripted outcomes."""

    def __init__(
        self, polls=1, fail=(), skip=(), transient=None, crash=(), delay=0.005
    ):
        self.operation_type = OperationType.UPGRADE
        self.polls = polls
        self.fail = set(fail)
        self.skip = set(skip)
        self.crash = set(crash)
        self.transient = dict(transient or {})
        self.delay = delay
        self.lock = threading.Lock()
        self.triggered = []
        self.in_flight = 0
        self.max_seen = 0
        self._remaining = {}

    def trigger(self, instance):
        with self.lock:
            self.triggered.append(instance.guid)
            if instance.guid in self.crash:
                raise RuntimeError("adapter exited 1: bad manifest")
            if self.transient.get(instance.guid, 0) > 0:
                self.transient[instance.guid] -= 1
                raise TransientInstanceError("instance busy")
            if instance.guid in self.skip:
                return TriggeredOperation(
                    InstanceStatus.SKIPPED, description="already up to date"
                )
            self.in_flight += 1
            self.max_seen = max(self.max_seen, self.in_flight)
            self._remaining[instance.guid] = self.polls
            task_id = len(self.triggered)
        time.sleep(self.delay)
        return TriggeredOperation(
            InstanceStatus.IN_PROGRESS,
            token=OperationToken(OperationType.UPGRADE, task_id),
        )

    def check(self, instance, token):
        time.sleep(self.delay)
        with self.lock:
            self._remaining[instance.guid] -= 1
            if self._remaining[instance.guid] > 0:
                return TriggeredOperation(InstanceStatus.IN_PROGRESS, token)
            self.in_flight -= 1
            if instance.guid in self.fail:
                raise FatalInstanceError("Instance upgrade failed: disk full")
            return TriggeredOperation(InstanceStatus.SUCCEEDED, token)


def make_inventory(count):
    inventory = MagicMock()
    inventory.list_instances.return_value = [
        Instance(f"i{n}", "gold") for n in range(count)
    ]
    return inventory


class TestFleetIterator(unittest.TestCase):
    """Test fleet runs."""

    def run_fleet(self, count, triggerer, **kwargs):
        kwargs.setdefault("poll_interval", 0)
        kwargs.setdefault("attempt_interval", 0)
        iterator = FleetIterator(
            make_inventory(count), triggerer, offering_id="redis", **kwargs
        )
        return iterator, iterator.run()

    def test_all_instances_succeed(self):
        """Test a clean run over five instances with one canary."""
        triggerer = FakeTriggerer(polls=2)
        iterator, report = self.run_fleet(
            5, triggerer, canary_count=1, max_in_flight=2
        )

        self.assertTrue(report.success)
        self.assertEqual(report.stats()["succeeded"], 5)
        self.assertEqual(len(triggerer.triggered), 5)
        self.assertEqual(triggerer.triggered[0], "i0")
        self.assertTrue(report.records[0].is_canary)
        self.assertFalse(any(r.is_canary for r in report.records[1:]))
        self.assertEqual(iterator.stats["succeeded"], 5)
        self.assertLessEqual(triggerer.max_seen, 2)
        iterator.inventory.list_instances.assert_called_once_with("redis")

    def test_unexpected_error_fails_only_that_instance(self):
        """Test an unexpected error marks one instance failed and the run goes on."""
        triggerer = FakeTriggerer(crash={"i2"})
        _, report = self.run_fleet(5, triggerer, canary_count=1, max_in_flight=1)

        self.assertEqual(triggerer.triggered, ["i0", "i1", "i2", "i3", "i4"])
        self.assertEqual(report.records[2].status, InstanceStatus.FAILED)
        self.assertIn("bad manifest", report.records[2].last_error)
        self.assertIsNotNone(report.end_time)
        self.assertEqual(report.stats()["succeeded"], 4)
        self.assertFalse(report.success)

    def test_manifest_failure_through_broker_keeps_pool_running(self):
        """Test a manifest generator failure in the broker fails only its instance."""
        offering = ServiceOffering(id="redis", name="redis", plans=[Plan("gold", "gold")])
        deployments = MagicMock(spec=DeploymentGateway)
        deployments.get_deployment.return_value = {"version": 1}
        deployments.tasks.return_value = []
        deployments.submit_deploy.return_value = 7
        deployments.poll_task.return_value = Task(7, TaskState.DONE)
        manifests = MagicMock(spec=ManifestGenerator)

        def generate(name, plan, parameters, previous):
            if name.endswith("i2"):
                raise RuntimeError("adapter exited 1: bad manifest")
            return {"version": 2}

        manifests.generate.side_effect = generate
        broker = BrokerCore(offering, deployments, manifests, make_inventory(5))

        iterator = FleetIterator(
            broker.inventory,
            BrokerTriggerer(broker),
            offering_id="redis",
            canary_count=1,
            max_attempts=2,
            attempt_interval=0,
            poll_interval=0,
        )
        report = iterator.run()

        statuses = [r.status for r in report.records]
        self.assertEqual(
            statuses,
            [InstanceStatus.SUCCEEDED] * 2
            + [InstanceStatus.FAILED]
            + [InstanceStatus.SUCCEEDED] * 2,
        )
        self.assertIn("generate manifest failed", report.records[2].last_error)
        self.assertEqual(report.records[2].attempts, 2)

    def test_canary_failure_halts_run(self):
        """Test a failed canary leaves every other instance untouched."""
        triggerer = FakeTriggerer(fail={"i0"})
        _, report = self.run_fleet(5, triggerer, canary_count=1, max_in_flight=3)

        self.assertFalse(report.success)
        self.assertTrue(report.canary_failed)
        self.assertEqual(triggerer.triggered, ["i0"])
        self.assertEqual(report.records[0].status, InstanceStatus.FAILED)
        self.assertIn("disk full", report.records[0].last_error)
        self.assertEqual(
            [r.status for r in report.records[1:]], [InstanceStatus.PENDING] * 4
        )

    def test_canary_failure_stops_remaining_canaries(self):
        """Test no further canary starts after one fails."""
        triggerer = FakeTriggerer(fail={"i0"})
        _, report = self.run_fleet(4, triggerer, canary_count=2, max_in_flight=1)

        self.assertEqual(triggerer.triggered, ["i0"])
        self.assertEqual(report.records[1].status, InstanceStatus.PENDING)
        self.assertTrue(report.records[1].is_canary)

    def test_max_in_flight_is_never_exceeded(self):
        """Test at most max_in_flight operations run at once."""
        triggerer = FakeTriggerer(polls=3)
        _, report = self.run_fleet(8, triggerer, max_in_flight=2)

        self.assertTrue(report.success)
        self.assertLessEqual(triggerer.max_seen, 2)
        self.assertGreaterEqual(triggerer.max_seen, 1)

    def test_failure_after_canaries_does_not_stop_siblings(self):
        """Test one failing instance does not prevent the others."""
        triggerer = FakeTriggerer(fail={"i2"})
        _, report = self.run_fleet(5, triggerer, canary_count=1, max_in_flight=2)

        self.assertFalse(report.success)
        self.assertFalse(report.canary_failed)
        stats = report.stats()
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["succeeded"], 4)
        self.assertIn("disk full", report.records[2].last_error)

    def test_transient_errors_are_retried(self):
        """Test a busy instance is retried until it succeeds."""
        triggerer = FakeTriggerer(transient={"i0": 2})
        _, report = self.run_fleet(1, triggerer, max_attempts=3)

        record = report.records[0]
        self.assertEqual(record.status, InstanceStatus.SUCCEEDED)
        self.assertEqual(record.attempts, 3)
        self.assertIsNone(record.last_error)

    def test_transient_errors_exhaust_attempts(self):
        """Test an instance that stays busy fails after max_attempts."""
        triggerer = FakeTriggerer(transient={"i0": 10})
        _, report = self.run_fleet(1, triggerer, max_attempts=3)

        record = report.records[0]
        self.assertEqual(record.status, InstanceStatus.FAILED)
        self.assertEqual(triggerer.triggered, ["i0"] * 3)
        self.assertIn("gave up after 3 attempts", record.last_error)

    def test_skipped_instances_count_as_success(self):
        """Test skipped instances do not fail the run."""
        triggerer = FakeTriggerer(skip={"i1"})
        _, report = self.run_fleet(3, triggerer, max_in_flight=3)

        self.assertTrue(report.success)
        self.assertEqual(report.records[1].status, InstanceStatus.SKIPPED)
        self.assertEqual(report.records[1].last_error, "already up to date")

    def test_total_timeout_abandons_in_flight_instances(self):
        """Test a run deadline marks the in-flight and unstarted instances failed."""
        triggerer = FakeTriggerer(polls=10**9, delay=0)
        _, report = self.run_fleet(
            3, triggerer, max_in_flight=1, poll_interval=0.01, total_timeout=0.2
        )

        self.assertTrue(report.stopped)
        self.assertFalse(report.success)
        first, *rest = report.records
        self.assertEqual(first.status, InstanceStatus.FAILED)
        self.assertIn("timed out", first.last_error)
        self.assertIn("task 1", first.last_error)
        for record in rest:
            self.assertEqual(record.status, InstanceStatus.FAILED)
            self.assertIn("before the operation started", record.last_error)

    def test_instance_timeout(self):
        """Test a slow instance is abandoned without stopping the run."""
        triggerer = FakeTriggerer(polls=10**9, delay=0)
        _, report = self.run_fleet(
            2, triggerer, max_in_flight=2, poll_interval=0.01, instance_timeout=0.05
        )

        self.assertFalse(report.stopped)
        for record in report.records:
            self.assertEqual(record.status, InstanceStatus.FAILED)
            self.assertIn("timed out after 0.05s", record.last_error)

    def test_empty_fleet(self):
        """Test a run without instances succeeds."""
        _, report = self.run_fleet(0, FakeTriggerer(), canary_count=2)
        self.assertTrue(report.success)
        self.assertEqual(report.stats()["total"], 0)

    def test_invalid_limits(self):
        """Test out-of-range options are rejected."""
        inventory = make_inventory(1)
        with self.assertRaises(ValueError):
            FleetIterator(inventory, FakeTriggerer(), max_in_flight=0)
        with self.assertRaises(ValueError):
            FleetIterator(inventory, FakeTriggerer(), canary_count=-1)
        with self.assertRaises(ValueError):
            FleetIterator(inventory, FakeTriggerer(), max_attempts=0)

    def test_report_export(self):
        """Test the JSON report lists every instance."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "report.json")
            _, report = self.run_fleet(
                3, FakeTriggerer(fail={"i1"}), max_in_flight=2, report_file=path
            )
            with open(path) as f:
                data = json.load(f)

        self.assertFalse(data["success"])
        self.assertEqual(data["operation"], "upgrade")
        self.assertEqual(data["statistics"]["failed"], 1)
        by_guid = {r["instance_guid"]: r for r in data["results"]}
        self.assertEqual(set(by_guid), {"i0", "i1", "i2"})
        self.assertEqual(by_guid["i1"]["status"], "failed")
        self.assertIn("disk full", by_guid["i1"]["error_message"])


if __name__ == "__main__":
    unittest.main()
