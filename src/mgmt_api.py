"""
Management API for fleet operations on the broker's service instances.

Endpoints:
- GET /health: Health check
- GET /mgmt/service_instances: List service instances
- PATCH /mgmt/service_instances/<id>?operation_type=upgrade|recreate
- GET /mgmt/service_instances/<id>/last_operation?operation=<token>

Run with the broker-mgmt-api console script, or embed create_app().
"""

import argparse
import hmac
import importlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from config import ApiConfig
from errors import GENERIC_ERROR_PREFIX, ClientError, GatewayError, InstanceNotFoundError
from log_utils import setup_logging
from models import Instance
from operation_token import OperationType

logger = logging.getLogger(__name__)

MANAGEMENT_OPERATIONS = (OperationType.UPGRADE.value, OperationType.RECREATE.value)


def create_response(
    data: Optional[Dict] = None,
    error: Optional[str] = None,
    description: Optional[str] = None,
    status_code: int = 200,
) -> Tuple[Dict[str, Any], int]:
    """Create a standardized API response."""
    response: Dict[str, Any] = dict(data or {})
    response["timestamp"] = datetime.now(timezone.utc).isoformat()
    if error:
        response["error"] = error
    if description:
        response["description"] = description
    return response, status_code


def create_app(broker: Any, config: Optional[ApiConfig] = None) -> Flask:
    """
    Build the management API around a broker.

    Args:
        broker: BrokerCore, possibly wrapped by a CredentialStoreBroker
        config: API settings; read from the environment when omitted

    Returns:
        Flask application
    """
    config = config or ApiConfig.from_env()
    app = Flask(__name__)

    @app.before_request
    def check_basic_auth():
        if not config.username or request.path == "/health":
            return None
        auth = request.authorization
        if (
            auth is None
            or not hmac.compare_digest(auth.username or "", config.username)
            or not hmac.compare_digest(auth.password or "", config.password)
        ):
            return create_response(
                error="Unauthorized",
                description="Valid broker credentials are required",
                status_code=401,
            )
        return None

    @app.get("/health")
    def handle_health():
        return create_response(data={"status": "healthy"})

    @app.get("/mgmt/service_instances")
    def handle_list_instances():
        instances = broker.list_instances()
        return jsonify([inst.to_dict() for inst in instances])

    @app.patch("/mgmt/service_instances/<instance_id>")
    def handle_process_instance(instance_id: str):
        operation_type = request.args.get("operation_type", "")
        if operation_type not in MANAGEMENT_OPERATIONS:
            raise ValueError(
                f"operation_type must be one of {', '.join(MANAGEMENT_OPERATIONS)}"
            )

        body = request.get_json(silent=True) or {}
        plan_id = body.get("plan_id") or _lookup_plan(broker, instance_id)

        logger.info(f"[{instance_id}] {operation_type} requested through management API")
        token = broker.process_instance(Instance(instance_id, plan_id), operation_type)
        if token is None:
            return Response(status=204)
        return create_response(data={"operation": token.serialize()}, status_code=202)

    @app.get("/mgmt/service_instances/<instance_id>/last_operation")
    def handle_last_operation(instance_id: str):
        operation = request.args.get("operation", "")
        if not operation:
            raise ValueError("operation query parameter is required")
        last = broker.last_operation(instance_id, operation)
        return create_response(data=last.to_dict())

    @app.errorhandler(ClientError)
    def handle_client_error(e: ClientError):
        logger.warning(f"Request rejected: {e}")
        return create_response(
            error=e.reason, description=str(e), status_code=e.status_code
        )

    @app.errorhandler(ValueError)
    def handle_validation_error(e: ValueError):
        logger.error(f"Validation error: {e}")
        return create_response(
            error="Validation Error", description=str(e), status_code=400
        )

    @app.errorhandler(GatewayError)
    def handle_gateway_error(e: GatewayError):
        logger.error(f"Backend error: {e}")
        return create_response(
            error="Backend Error",
            description=f"{GENERIC_ERROR_PREFIX} {e}",
            status_code=500,
        )

    @app.errorhandler(Exception)
    def handle_internal_error(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Internal error: {e}")
        return create_response(
            error="Internal Server Error",
            description=f"{GENERIC_ERROR_PREFIX} an unexpected error occurred",
            status_code=500,
        )

    return app


def _lookup_plan(broker: Any, instance_id: str) -> str:
    for inst in broker.list_instances():
        if inst.guid == instance_id:
            return inst.plan_id
    raise InstanceNotFoundError(f"service instance {instance_id} not found")


def load_broker(factory_path: str) -> Any:
    """
    Build a broker from a ``module:callable`` factory path.

    Raises:
        ValueError: If the path is malformed or does not name a callable
    """
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"broker factory must look like module:callable, got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attr, None)
    if not callable(factory):
        raise ValueError(f"{factory_path} is not callable")
    return factory()


def serve(broker: Any, config: Optional[ApiConfig] = None) -> None:
    """Run the management API on the configured host and port."""
    config = config or ApiConfig.from_env()
    app = create_app(broker, config)
    logger.info(f"Serving management API on {config.host}:{config.port}")
    app.run(host=config.host, port=config.port)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the management API argument parser."""
    parser = argparse.ArgumentParser(
        description="Serve the broker management API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  broker-mgmt-api --broker-factory mybroker.wiring:build_broker --port 8080\n\n"
            "Credentials come from MGMT_USERNAME and MGMT_PASSWORD. HOST and PORT\n"
            "set the defaults for --host and --port."
        ),
    )
    parser.add_argument(
        "--broker-factory",
        required=True,
        help="module:callable returning the broker to serve",
    )
    parser.add_argument("--host", default=None, help="Bind address (default: $HOST or 0.0.0.0)")
    parser.add_argument(
        "--port", type=int, default=None, help="Listen port (default: $PORT or 8080)"
    )
    parser.add_argument(
        "--log-file", default=None, help="Also write logs to this file"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = ApiConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    try:
        broker = load_broker(args.broker_factory)
    except (ImportError, ValueError) as e:
        parser.error(str(e))

    serve(broker, config)
    return 0
