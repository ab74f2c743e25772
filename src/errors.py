"""
Error taxonomy for the on-demand service broker.

Client errors carry an HTTP status code and a machine-readable reason so the
management API and the services client can map them back and forth.
"""

from typing import Optional

GENERIC_ERROR_PREFIX = (
    "There was a problem completing your request. Please contact your "
    "operations team providing the following information:"
)


class BrokerError(Exception):
    """Base class for all broker errors."""


class ClientError(BrokerError):
    """A request the broker refuses. Never retried."""

    status_code = 400
    reason = "bad-request"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        if reason:
            self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.reason, "description": str(self)}


class PlanNotFoundError(ClientError):
    reason = "plan-not-found"

    def __init__(self, plan_id: str):
        super().__init__(f"plan {plan_id} does not exist")
        self.plan_id = plan_id


class MaintenanceInfoConflictError(ClientError):
    status_code = 422
    reason = "MaintenanceInfoConflict"

    def __init__(
        self,
        message: str = (
            "passed maintenance_info does not match the catalog maintenance_info"
        ),
    ):
        super().__init__(message)


class MaintenanceInfoNilConflictError(MaintenanceInfoConflictError):
    def __init__(self):
        super().__init__(
            "maintenance_info was passed, but the broker catalog contains no maintenance_info"
        )


class PlanMismatchError(ClientError):
    status_code = 422
    reason = "maintenance-info-plan-mismatch"


class AsyncRequiredError(ClientError):
    status_code = 422
    reason = "AsyncRequired"

    def __init__(self):
        super().__init__(
            "This service plan requires client support for asynchronous "
            "service operations."
        )


class InstanceAlreadyExistsError(ClientError):
    status_code = 409
    reason = "instance-already-exists"


class InstanceNotFoundError(ClientError):
    status_code = 404
    reason = "instance-not-found"


class BindingNotFoundError(ClientError):
    status_code = 410
    reason = "binding-not-found"


class InvalidOperationTokenError(ClientError):
    reason = "invalid-operation"


class OperationInProgressError(ClientError):
    status_code = 409
    reason = "operation-in-progress"


class DeploymentNotFoundError(ClientError):
    status_code = 410
    reason = "deployment-not-found"


class GatewayError(BrokerError):
    """The deployment system or another backend failed to answer."""


class UnsupportedCredentialError(BrokerError):
    """A value the credential store cannot hold."""


class TransientInstanceError(BrokerError):
    """A per-instance failure worth retrying after the attempt interval."""


class FatalInstanceError(BrokerError):
    """A per-instance failure that retrying will not fix."""


class FatalFleetError(BrokerError):
    """A failure that stops the whole fleet run."""
