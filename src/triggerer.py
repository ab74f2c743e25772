"""
Per-instance trigger and status check used by the fleet iterator.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from errors import (
    ClientError,
    DeploymentNotFoundError,
    FatalInstanceError,
    GatewayError,
    InstanceNotFoundError,
    OperationInProgressError,
    TransientInstanceError,
)
from models import Instance, InstanceStatus, LastOperationState
from operation_token import OperationToken, OperationType

logger = logging.getLogger(__name__)


@dataclass
class TriggeredOperation:
    """What one trigger or check call observed."""

    status: InstanceStatus
    token: Optional[OperationToken] = None
    description: str = ""


class BrokerTriggerer:
    """Starts management operations through a management surface.

    The surface is a BrokerCore in process or a BrokerServicesClient over
    HTTP; both expose process_instance() and last_operation().

    Busy instances and backend failures raise TransientInstanceError,
    rejected requests and failed tasks raise FatalInstanceError.
    """

    def __init__(self, surface: Any, operation_type: str = OperationType.UPGRADE.value):
        op = OperationType(operation_type)
        if op not in (OperationType.UPGRADE, OperationType.RECREATE):
            raise ValueError(f"unsupported fleet operation: {operation_type}")
        self.surface = surface
        self.operation_type = op

    def trigger(self, instance: Instance) -> TriggeredOperation:
        try:
            token = self.surface.process_instance(instance, self.operation_type)
        except InstanceNotFoundError:
            return TriggeredOperation(
                InstanceStatus.SKIPPED, description="instance no longer exists"
            )
        except DeploymentNotFoundError:
            return TriggeredOperation(
                InstanceStatus.SKIPPED, description="orphan: deployment not found"
            )
        except OperationInProgressError as e:
            raise TransientInstanceError(f"instance busy: {e}") from e
        except ClientError as e:
            raise FatalInstanceError(f"{self.operation_type.value} rejected: {e}") from e
        except GatewayError as e:
            raise TransientInstanceError(f"{self.operation_type.value} failed: {e}") from e

        if token is None:
            return TriggeredOperation(InstanceStatus.SKIPPED, description="already up to date")
        logger.debug(f"[{instance.guid}] Triggered {self.operation_type.value}: task {token.backend_task_id}")
        return TriggeredOperation(InstanceStatus.IN_PROGRESS, token=token)

    def check(self, instance: Instance, token: OperationToken) -> TriggeredOperation:
        try:
            last = self.surface.last_operation(instance.guid, token)
        except ClientError as e:
            raise FatalInstanceError(f"status check rejected: {e}") from e
        except GatewayError as e:
            raise TransientInstanceError(f"status check failed: {e}") from e

        if last.state == LastOperationState.SUCCEEDED:
            return TriggeredOperation(InstanceStatus.SUCCEEDED, token, last.description)
        if last.state == LastOperationState.FAILED:
            raise FatalInstanceError(last.description)
        return TriggeredOperation(InstanceStatus.IN_PROGRESS, token, last.description)
