"""
Reconciliation of request maintenance info against the catalog.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from errors import (
    MaintenanceInfoConflictError,
    MaintenanceInfoNilConflictError,
    PlanMismatchError,
    PlanNotFoundError,
)
from models import MaintenanceInfo, ServiceOffering

logger = logging.getLogger(__name__)

NOT_PASSED_WARNING = (
    "maintenance info defined in broker catalog but not passed in request"
)


class UpdateKind(str, Enum):
    UPDATE = "update"
    UPGRADE = "upgrade"


def check(
    plan_id: str,
    request_maintenance_info: Optional[MaintenanceInfo],
    offering: ServiceOffering,
    warn: Optional[Callable[[str], None]] = None,
) -> None:
    """
    Validate the maintenance info of a provision or update request.

    Args:
        plan_id: Plan the request targets
        request_maintenance_info: Maintenance info carried by the request
        offering: Catalog snapshot to look the plan up in
        warn: Called with a message when the request omits maintenance info
            the plan declares; defaults to the module logger

    Raises:
        PlanNotFoundError: If the plan is not in the catalog
        MaintenanceInfoNilConflictError: If the request has maintenance info
            but the plan declares none
        MaintenanceInfoConflictError: If both are present and differ
    """
    plan = offering.find_plan(plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)

    declared = plan.maintenance_info
    if request_maintenance_info is None:
        if declared is not None:
            (warn or logger.warning)(NOT_PASSED_WARNING)
        return

    if declared is None:
        raise MaintenanceInfoNilConflictError()
    if request_maintenance_info != declared:
        raise MaintenanceInfoConflictError()


def classify_update(
    request_maintenance_info: Optional[MaintenanceInfo],
    plan_maintenance_info: Optional[MaintenanceInfo],
) -> UpdateKind:
    """Upgrade iff the request carries maintenance info matching the plan's."""
    if request_maintenance_info is None:
        return UpdateKind.UPDATE
    if request_maintenance_info != plan_maintenance_info:
        raise PlanMismatchError(
            "maintenance_info in the request does not match the plan's maintenance_info"
        )
    return UpdateKind.UPGRADE
