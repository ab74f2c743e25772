"""
Unit tests for BrokerTriggerer.
"""

import unittest
from unittest.mock import MagicMock

from errors import (
    DeploymentNotFoundError,
    FatalInstanceError,
    GatewayError,
    InstanceNotFoundError,
    OperationInProgressError,
    PlanNotFoundError,
    TransientInstanceError,
)
from models import Instance, InstanceStatus, LastOperation, LastOperationState
from operation_token import OperationToken, OperationType
from triggerer import BrokerTriggerer


class TestBrokerTriggerer(unittest.TestCase):
    """Test trigger() and check() classification."""

    def setUp(self):
        """Set up test fixtures."""
        self.surface = MagicMock()
        self.instance = Instance("i1", "gold")
        self.token = OperationToken(OperationType.UPGRADE, 12, "ctx", "gold")
        self.triggerer = BrokerTriggerer(self.surface, "upgrade")

    def test_unsupported_operation(self):
        """Test only upgrade and recreate can run across a fleet."""
        with self.assertRaises(ValueError):
            BrokerTriggerer(self.surface, "delete")
        self.assertEqual(
            BrokerTriggerer(self.surface, "recreate").operation_type,
            OperationType.RECREATE,
        )

    def test_trigger_accepted(self):
        """Test an accepted operation is in progress with its token."""
        self.surface.process_instance.return_value = self.token
        op = self.triggerer.trigger(self.instance)
        self.assertEqual(op.status, InstanceStatus.IN_PROGRESS)
        self.assertEqual(op.token, self.token)
        self.surface.process_instance.assert_called_once_with(
            self.instance, OperationType.UPGRADE
        )

    def test_trigger_skipped(self):
        """Test up-to-date, orphaned and deleted instances are skipped."""
        cases = [
            (None, "already up to date"),
            (DeploymentNotFoundError("gone"), "orphan"),
            (InstanceNotFoundError("gone"), "no longer exists"),
        ]
        for outcome, text in cases:
            with self.subTest(text=text):
                if isinstance(outcome, Exception):
                    self.surface.process_instance.side_effect = outcome
                else:
                    self.surface.process_instance.side_effect = None
                    self.surface.process_instance.return_value = outcome
                op = self.triggerer.trigger(self.instance)
                self.assertEqual(op.status, InstanceStatus.SKIPPED)
                self.assertIn(text, op.description)

    def test_trigger_busy_is_transient(self):
        """Test a busy instance is retried later."""
        self.surface.process_instance.side_effect = OperationInProgressError("busy")
        with self.assertRaises(TransientInstanceError):
            self.triggerer.trigger(self.instance)

    def test_trigger_backend_failure_is_transient(self):
        """Test gateway failures are retried later."""
        self.surface.process_instance.side_effect = GatewayError("502")
        with self.assertRaises(TransientInstanceError):
            self.triggerer.trigger(self.instance)

    def test_trigger_client_error_is_fatal(self):
        """Test rejected requests are not retried."""
        self.surface.process_instance.side_effect = PlanNotFoundError("gold")
        with self.assertRaises(FatalInstanceError):
            self.triggerer.trigger(self.instance)

    def test_check_states(self):
        """Test status checks map operation states."""
        self.surface.last_operation.return_value = LastOperation(
            LastOperationState.IN_PROGRESS, "Instance upgrade in progress"
        )
        self.assertEqual(
            self.triggerer.check(self.instance, self.token).status,
            InstanceStatus.IN_PROGRESS,
        )
        self.surface.last_operation.return_value = LastOperation(
            LastOperationState.SUCCEEDED, "Instance upgrade completed"
        )
        self.assertEqual(
            self.triggerer.check(self.instance, self.token).status,
            InstanceStatus.SUCCEEDED,
        )
        self.surface.last_operation.assert_called_with("i1", self.token)

    def test_check_failed_task_is_fatal(self):
        """Test a failed task keeps its description."""
        self.surface.last_operation.return_value = LastOperation(
            LastOperationState.FAILED, "Instance upgrade failed: disk full"
        )
        with self.assertRaises(FatalInstanceError) as ctx:
            self.triggerer.check(self.instance, self.token)
        self.assertIn("disk full", str(ctx.exception))

    def test_check_gateway_error_is_transient(self):
        """Test poll failures are transient."""
        self.surface.last_operation.side_effect = GatewayError("timeout")
        with self.assertRaises(TransientInstanceError):
            self.triggerer.check(self.instance, self.token)


if __name__ == "__main__":
    unittest.main()
