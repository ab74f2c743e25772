"""
Configuration for fleet runs and the management API.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class FleetConfig:
    """Configuration for fleet operations."""

    broker_url: str
    broker_username: str = ""
    broker_password: str = ""
    service_offering: str = ""
    operation: str = "upgrade"
    canaries: int = 0
    max_in_flight: int = 1
    attempt_interval: float = 60.0
    max_attempts: int = 5
    poll_interval: float = 10.0
    timeout: Optional[float] = None
    total_timeout: Optional[float] = None
    report_file: Optional[str] = None
    skip_tls_validation: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "FleetConfig":
        """
        Create configuration from command-line arguments.

        The broker password falls back to the BROKER_PASSWORD environment
        variable so it does not have to appear on the command line.

        Args:
            args: Parsed argparse arguments

        Returns:
            FleetConfig instance
        """
        return cls(
            broker_url=args.broker_url,
            broker_username=args.broker_username,
            broker_password=args.broker_password
            or os.environ.get("BROKER_PASSWORD", ""),
            service_offering=args.service_offering,
            operation=args.operation,
            canaries=args.canaries,
            max_in_flight=args.max_in_flight,
            attempt_interval=args.attempt_interval,
            max_attempts=args.max_attempts,
            poll_interval=args.poll_interval,
            timeout=args.timeout,
            total_timeout=args.total_timeout,
            report_file=args.report_file,
            skip_tls_validation=args.skip_tls_validation,
            verbose=args.verbose,
        )


@dataclass
class ApiConfig:
    """Settings of the management API."""

    username: str = ""
    password: str = ""
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "ApiConfig":
        """Read MGMT_USERNAME, MGMT_PASSWORD, HOST and PORT from the environment."""
        port = os.environ.get("PORT", "")
        return cls(
            username=os.environ.get("MGMT_USERNAME", ""),
            password=os.environ.get("MGMT_PASSWORD", ""),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(port) if port else 8080,
        )
