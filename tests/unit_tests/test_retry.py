"""
Unit tests for the retry helper.
"""

import socket
import unittest
from unittest.mock import MagicMock, patch

from retry import is_host_unresolvable, retry_with_backoff


class TestIsHostUnresolvable(unittest.TestCase):
    """Test DNS failure detection."""

    def test_dns_failures(self):
        """Test the recognised resolver messages."""
        self.assertTrue(is_host_unresolvable(OSError("lookup foo: no such host")))
        self.assertTrue(is_host_unresolvable(socket.gaierror(-2, "whatever")))
        self.assertTrue(
            is_host_unresolvable(
                ConnectionError("Temporary failure in name resolution")
            )
        )

    def test_other_failures(self):
        """Test unrelated errors are not DNS failures."""
        self.assertFalse(is_host_unresolvable(ConnectionRefusedError("refused")))
        self.assertFalse(is_host_unresolvable(ValueError("bad")))


class TestRetryWithBackoff(unittest.TestCase):
    """Test retry_with_backoff()."""

    def test_returns_first_success(self):
        """Test a successful call is not retried."""
        func = MagicMock(return_value="ok")
        sleep = MagicMock()
        self.assertEqual(retry_with_backoff(func, lambda e: True, sleep=sleep), "ok")
        func.assert_called_once()
        sleep.assert_not_called()

    def test_delay_doubles(self):
        """Test the delay doubles between attempts."""
        func = MagicMock(side_effect=[KeyError("a"), KeyError("b"), KeyError("c"), 7])
        sleep = MagicMock()
        result = retry_with_backoff(
            func, lambda e: True, max_attempts=5, initial_delay=1.0, sleep=sleep
        )
        self.assertEqual(result, 7)
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [1.0, 2.0, 4.0])

    def test_rejected_error_propagates(self):
        """Test errors the predicate rejects propagate at once."""
        func = MagicMock(side_effect=ValueError("fatal"))
        sleep = MagicMock()
        with self.assertRaises(ValueError):
            retry_with_backoff(func, lambda e: False, sleep=sleep)
        func.assert_called_once()
        sleep.assert_not_called()

    @patch("retry.time.sleep")
    def test_uses_time_sleep_by_default(self, mock_sleep):
        """Test time.sleep is used when no sleep function is given."""
        func = MagicMock(side_effect=[KeyError("a"), "done"])
        self.assertEqual(retry_with_backoff(func, lambda e: True), "done")
        mock_sleep.assert_called_once_with(0.016)


if __name__ == "__main__":
    unittest.main()
