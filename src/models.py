"""
Data models for the on-demand service broker and its fleet operations.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import FatalFleetError


@dataclass
class MaintenanceInfo:
    """Version marker a plan declares and requests may echo back.

    Equality compares ``public`` as an unordered mapping.
    """

    version: str = ""
    public: Dict[str, str] = field(default_factory=dict)
    private: str = ""

    def __post_init__(self):
        if self.public is None:
            self.public = {}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MaintenanceInfo"]:
        if data is None:
            return None
        return cls(
            version=data.get("version", ""),
            public=dict(data.get("public") or {}),
            private=data.get("private", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "public": dict(self.public),
            "private": self.private,
        }


@dataclass
class Plan:
    """A service plan from the catalog snapshot."""

    id: str
    name: str
    maintenance_info: Optional[MaintenanceInfo] = None
    post_deploy_errands: List[str] = field(default_factory=list)
    pre_delete_errand: Optional[str] = None


@dataclass
class ServiceOffering:
    """Read-only catalog snapshot for one service offering."""

    id: str
    name: str
    plans: List[Plan] = field(default_factory=list)

    def find_plan(self, plan_id: str) -> Optional[Plan]:
        for plan in self.plans:
            if plan.id == plan_id:
                return plan
        return None


@dataclass
class Instance:
    """A provisioned service instance."""

    guid: str
    plan_id: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"service_instance_id": self.guid, "plan_id": self.plan_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Instance":
        return cls(guid=data["service_instance_id"], plan_id=data.get("plan_id", ""))


class TaskState(str, Enum):
    """States reported by the deployment system for a task."""

    QUEUED = "queued"
    PROCESSING = "processing"
    CANCELLING = "cancelling"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class Task:
    """Deployment system task as returned by a poll."""

    id: int
    state: TaskState
    description: str = ""
    result: str = ""
    context_id: str = ""


class LastOperationState(str, Enum):
    IN_PROGRESS = "in progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class LastOperation:
    """Answer to a last-operation poll."""

    state: LastOperationState
    description: str = ""

    @property
    def terminal(self) -> bool:
        return self.state != LastOperationState.IN_PROGRESS

    def to_dict(self) -> Dict[str, str]:
        return {"state": self.state.value, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastOperation":
        return cls(
            state=LastOperationState(data["state"]),
            description=data.get("description", ""),
        )


@dataclass
class Binding:
    """Result of a bind request."""

    credentials: Dict[str, Any]
    syslog_drain_url: Optional[str] = None
    route_service_url: Optional[str] = None


class InstanceStatus(str, Enum):
    """Status of one instance within a fleet run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FleetOperationRecord:
    """Progress of one instance during a fleet run."""

    instance_guid: str
    plan_id: str = ""
    status: InstanceStatus = InstanceStatus.PENDING
    last_error: Optional[str] = None
    attempts: int = 0
    is_canary: bool = False
    task_id: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.status in (
            InstanceStatus.SUCCEEDED,
            InstanceStatus.SKIPPED,
            InstanceStatus.FAILED,
        )

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class FleetReport:
    """Aggregate outcome of a fleet run."""

    records: List[FleetOperationRecord]
    start_time: float
    end_time: Optional[float] = None
    canary_failed: bool = False
    stopped: bool = False

    def by_status(self, status: InstanceStatus) -> List[FleetOperationRecord]:
        return [r for r in self.records if r.status == status]

    @property
    def success(self) -> bool:
        return not self.canary_failed and all(
            r.status in (InstanceStatus.SUCCEEDED, InstanceStatus.SKIPPED)
            for r in self.records
        )

    def stats(self) -> Dict[str, int]:
        counts = {"total": len(self.records)}
        for status in InstanceStatus:
            counts[status.value] = len(self.by_status(status))
        counts["canaries"] = sum(1 for r in self.records if r.is_canary)
        return counts

    def raise_on_failure(self) -> None:
        """
        Raise if the run did not succeed.

        Raises:
            FatalFleetError: If a canary failed or any instance ended failed
        """
        if self.success:
            return
        failed = self.by_status(InstanceStatus.FAILED)
        if self.canary_failed:
            message = "canary failed, fleet run halted"
        else:
            message = f"{len(failed)} of {len(self.records)} instances failed"
        details = "; ".join(f"{r.instance_guid}: {r.last_error}" for r in failed)
        raise FatalFleetError(f"{message}: {details}" if details else message)
