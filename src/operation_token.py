"""
Opaque operation tokens handed to callers of asynchronous broker operations.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple

from errors import InvalidOperationTokenError


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UPGRADE = "upgrade"
    RECREATE = "recreate"
    DELETE = "delete"
    BIND = "bind"
    UNBIND = "unbind"


@dataclass(frozen=True)
class OperationToken:
    """Correlates an accepted operation with its deployment task.

    ``context_id`` groups every task that belongs to one operation, e.g. a
    deploy followed by its post-deploy errands.
    """

    operation_type: OperationType
    backend_task_id: int
    context_id: str = ""
    plan_id: str = ""
    errands: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.backend_task_id < 0:
            raise ValueError("backend_task_id must not be negative")

    def serialize(self) -> str:
        return json.dumps(
            {
                "operation_type": self.operation_type.value,
                "task_id": self.backend_task_id,
                "context_id": self.context_id,
                "plan_id": self.plan_id,
                "errands": list(self.errands),
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def deserialize(cls, raw: str) -> "OperationToken":
        """
        Rebuild a token from its serialized form.

        Args:
            raw: String previously produced by serialize()

        Returns:
            OperationToken equal to the serialized one

        Raises:
            InvalidOperationTokenError: If the string is not a valid token
        """
        try:
            data = json.loads(raw)
            context_id = data.get("context_id", "")
            plan_id = data.get("plan_id", "")
            errands = data.get("errands") or []
            if not isinstance(context_id, str) or not isinstance(plan_id, str):
                raise TypeError("context_id and plan_id must be strings")
            if not isinstance(errands, list) or not all(isinstance(e, str) for e in errands):
                raise TypeError("errands must be a list of strings")
            return cls(
                operation_type=OperationType(data["operation_type"]),
                backend_task_id=int(data.get("task_id", 0)),
                context_id=context_id,
                plan_id=plan_id,
                errands=tuple(errands),
            )
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise InvalidOperationTokenError(
                f"operation data cannot be parsed: {e}"
            ) from e
