"""
Interfaces to the systems the broker drives but does not implement.

Wire clients for the deployment system, the platform inventory and the
credential store plug in by subclassing these.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from models import Instance, Plan, Task


class DeploymentGateway(ABC):
    """Submits and observes tasks on the deployment system."""

    @abstractmethod
    def submit_deploy(
        self, deployment_name: str, manifest: Dict[str, Any], context_id: str
    ) -> int:
        """Start a deploy task and return its ID."""

    @abstractmethod
    def submit_delete(self, deployment_name: str, context_id: str) -> int:
        """
        Start a delete task and return its ID.

        Raises:
            DeploymentNotFoundError: If the deployment does not exist
        """

    @abstractmethod
    def submit_errand(
        self, deployment_name: str, errand_name: str, context_id: str
    ) -> int:
        """Start an errand task and return its ID."""

    @abstractmethod
    def submit_recreate(self, deployment_name: str, context_id: str) -> int:
        """Start a task recreating every VM of the deployment."""

    @abstractmethod
    def poll_task(self, task_id: int) -> Task:
        """Return the current state of a task."""

    @abstractmethod
    def tasks(
        self, deployment_name: str, context_id: Optional[str] = None
    ) -> List[Task]:
        """Tasks of a deployment, newest first, optionally for one context."""

    @abstractmethod
    def get_deployment(self, deployment_name: str) -> Optional[Dict[str, Any]]:
        """Deployed manifest, or None when there is no such deployment."""


class ManifestGenerator(ABC):
    """Produces deployment manifests for a plan."""

    @abstractmethod
    def generate(
        self,
        deployment_name: str,
        plan: Plan,
        parameters: Dict[str, Any],
        previous_manifest: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        pass


class InstanceLister(ABC):
    """Lists the instances of a service offering known to the platform."""

    @abstractmethod
    def list_instances(self, offering_id: str) -> List[Instance]:
        pass


class CredentialStoreGateway(ABC):
    """Key/value secret store for binding credentials."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """
        Store a value under a key.

        Raises:
            UnsupportedCredentialError: If the value is neither a dict nor a str
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def authenticate(self) -> None:
        pass
