"""
On-demand service broker: lifecycle operations and fleet runs.
"""

from broker import BrokerCore
from clients import BrokerServicesClient
from config import ApiConfig, FleetConfig
from credential_broker import CredentialStoreBroker, augment
from iterator import FleetIterator
from log_utils import setup_logging
from mgmt_api import create_app, serve
from models import FleetOperationRecord, FleetReport, Instance, MaintenanceInfo
from operation_token import OperationToken, OperationType
from triggerer import BrokerTriggerer

__all__ = [
    "BrokerCore",
    "BrokerServicesClient",
    "ApiConfig",
    "FleetConfig",
    "CredentialStoreBroker",
    "augment",
    "FleetIterator",
    "setup_logging",
    "create_app",
    "serve",
    "FleetOperationRecord",
    "FleetReport",
    "Instance",
    "MaintenanceInfo",
    "OperationToken",
    "OperationType",
    "BrokerTriggerer",
]
