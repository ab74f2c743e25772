"""Console entry point for fleet upgrade and recreate runs."""

from __future__ import annotations

import argparse
from typing import List

from clients import BrokerServicesClient
from config import FleetConfig
from iterator import FleetIterator
from log_utils import setup_logging
from triggerer import BrokerTriggerer


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "On-demand service broker fleet operations\n\n"
            "Upgrades or recreates every service instance of a broker, canaries first,\n"
            "with a bounded number of operations in flight, and reports the outcome."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Upgrade all instances, one canary first, three at a time\n"
            "  python3 main.py --broker-url https://broker.example.com \\\n"
            "      --broker-username admin --canaries 1 --max-in-flight 3\n\n"
            "  # Recreate all instances, give up after two hours\n"
            "  python3 main.py --broker-url https://broker.example.com \\\n"
            "      --broker-username admin --operation recreate --total-timeout 7200\n\n"
            "The broker password is read from BROKER_PASSWORD when --broker-password is omitted."
        ),
    )

    required = parser.add_argument_group("required arguments")
    required.add_argument("--broker-url", required=True, help="Broker base URL")

    broker = parser.add_argument_group("broker options")
    broker.add_argument("--broker-username", default="", help="Broker basic auth user")
    broker.add_argument(
        "--broker-password", default="", help="Broker basic auth password"
    )
    broker.add_argument(
        "--service-offering", default="", help="Service offering ID of the instances"
    )
    broker.add_argument(
        "--skip-tls-validation",
        action="store_true",
        help="Do not verify the broker's TLS certificate",
    )

    operation = parser.add_argument_group("operation options")
    operation.add_argument(
        "--operation",
        choices=["upgrade", "recreate"],
        default="upgrade",
        help="Operation to run on every instance (default: upgrade)",
    )
    operation.add_argument(
        "--canaries",
        type=int,
        default=0,
        help="Instances processed first; a canary failure halts the run (default: 0)",
    )
    operation.add_argument(
        "--max-in-flight",
        type=int,
        default=1,
        help="Maximum concurrent operations (default: 1)",
    )
    operation.add_argument(
        "--attempt-interval",
        type=float,
        default=60.0,
        help="Seconds between attempts on a busy instance (default: 60)",
    )
    operation.add_argument(
        "--max-attempts",
        type=int,
        default=5,
        help="Attempts per instance (default: 5)",
    )
    operation.add_argument(
        "--poll-interval",
        type=float,
        default=10.0,
        help="Seconds between status checks (default: 10)",
    )
    operation.add_argument(
        "--timeout", type=float, default=None, help="Timeout per instance in seconds"
    )
    operation.add_argument(
        "--total-timeout",
        type=float,
        default=None,
        help="Timeout for the whole run in seconds",
    )

    output = parser.add_argument_group("output options")
    output.add_argument("--report-file", default=None, help="Write a JSON report here")
    output.add_argument(
        "--log-file", default="broker-fleet.log", help="Log file (default: broker-fleet.log)"
    )
    output.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    return parser


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = FleetConfig.from_args(args)
    client = BrokerServicesClient(
        base_url=config.broker_url,
        username=config.broker_username,
        password=config.broker_password,
        verify=not config.skip_tls_validation,
    )

    try:
        runner = FleetIterator(
            inventory=client,
            triggerer=BrokerTriggerer(client, config.operation),
            offering_id=config.service_offering,
            canary_count=config.canaries,
            max_in_flight=config.max_in_flight,
            attempt_interval=config.attempt_interval,
            max_attempts=config.max_attempts,
            poll_interval=config.poll_interval,
            instance_timeout=config.timeout,
            total_timeout=config.total_timeout,
            report_file=config.report_file,
        )
    except ValueError as e:
        parser.error(str(e))

    report = runner.run()
    return 0 if report.success else 1
