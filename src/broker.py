"""
Broker core: turns lifecycle requests into deployment system tasks.
"""

import hashlib
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from errors import (
    GENERIC_ERROR_PREFIX,
    AsyncRequiredError,
    BindingNotFoundError,
    ClientError,
    DeploymentNotFoundError,
    GatewayError,
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    InvalidOperationTokenError,
    OperationInProgressError,
    PlanNotFoundError,
)
from gateways import DeploymentGateway, InstanceLister, ManifestGenerator
from maintenance_info import UpdateKind, check, classify_update
from models import (
    Binding,
    Instance,
    LastOperation,
    LastOperationState,
    MaintenanceInfo,
    Plan,
    ServiceOffering,
    Task,
    TaskState,
)
from operation_token import OperationToken, OperationType

logger = logging.getLogger(__name__)

DEPLOYMENT_PREFIX = "service-instance_"

TASK_STATES = {
    TaskState.QUEUED: LastOperationState.IN_PROGRESS,
    TaskState.PROCESSING: LastOperationState.IN_PROGRESS,
    TaskState.CANCELLING: LastOperationState.IN_PROGRESS,
    TaskState.DONE: LastOperationState.SUCCEEDED,
    TaskState.ERROR: LastOperationState.FAILED,
    TaskState.TIMEOUT: LastOperationState.FAILED,
    TaskState.CANCELLED: LastOperationState.FAILED,
}

OPERATION_NAMES = {
    OperationType.CREATE: "Instance provisioning",
    OperationType.UPDATE: "Instance update",
    OperationType.UPGRADE: "Instance upgrade",
    OperationType.RECREATE: "Instance recreate",
    OperationType.DELETE: "Instance deletion",
    OperationType.BIND: "Binding",
    OperationType.UNBIND: "Unbinding",
}


def deployment_name(instance_id: str) -> str:
    return f"{DEPLOYMENT_PREFIX}{instance_id}"


class BrokerCore:
    """Lifecycle operations for the instances of one service offering.

    Holds no mutable state; every decision reads the catalog snapshot and
    the deployment system.
    """

    def __init__(
        self,
        offering: ServiceOffering,
        deployments: DeploymentGateway,
        manifests: ManifestGenerator,
        inventory: InstanceLister,
    ):
        self.offering = offering
        self.deployments = deployments
        self.manifests = manifests
        self.inventory = inventory

    # ------------------------------------------------------------------
    # Marketplace operations
    # ------------------------------------------------------------------

    def provision(
        self,
        instance_id: str,
        plan_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        maintenance_info: Optional[MaintenanceInfo] = None,
        accepts_incomplete: bool = True,
    ) -> OperationToken:
        """
        Start deploying a new service instance.

        Args:
            instance_id: Platform instance GUID
            plan_id: Plan to deploy
            parameters: Arbitrary request parameters for the manifest
            maintenance_info: Maintenance info carried by the request
            accepts_incomplete: Whether the caller supports async operations

        Returns:
            Token of the accepted create operation

        Raises:
            ClientError: If the request is rejected
            GatewayError: If the deploy could not be submitted
        """
        if not accepts_incomplete:
            raise AsyncRequiredError()
        check(plan_id, maintenance_info, self.offering, warn=self._warner(instance_id))
        plan = self._plan(plan_id)

        name = deployment_name(instance_id)
        if self._get_deployment(name) is not None:
            raise InstanceAlreadyExistsError(f"instance {instance_id} already exists")

        manifest = self._generate(name, plan, parameters or {}, None)
        context_id = str(uuid.uuid4())
        task_id = self._submit(
            "deploy", self.deployments.submit_deploy, name, manifest, context_id
        )
        logger.info(
            f"[{instance_id}] Provisioning with plan {plan_id}: task {task_id} "
            f"(context {context_id})"
        )
        return OperationToken(
            OperationType.CREATE,
            task_id,
            context_id,
            plan_id,
            tuple(plan.post_deploy_errands),
        )

    def update(
        self,
        instance_id: str,
        plan_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        maintenance_info: Optional[MaintenanceInfo] = None,
        previous_plan_id: Optional[str] = None,
        accepts_incomplete: bool = True,
    ) -> OperationToken:
        """
        Redeploy an instance with a new plan, parameters or maintenance info.

        A request carrying maintenance info is an upgrade, anything else a
        plain update. Maintenance info problems are rejected before the
        deployment system is contacted.

        Raises:
            ClientError: If the request is rejected
            GatewayError: If the deploy could not be submitted
        """
        if not accepts_incomplete:
            raise AsyncRequiredError()
        check(plan_id, maintenance_info, self.offering, warn=self._warner(instance_id))
        plan = self._plan(plan_id)
        kind = classify_update(maintenance_info, plan.maintenance_info)

        name = deployment_name(instance_id)
        previous = self._get_deployment(name)
        if previous is None:
            raise InstanceNotFoundError(f"instance {instance_id} not found")

        manifest = self._generate(name, plan, parameters or {}, previous)
        context_id = str(uuid.uuid4())
        task_id = self._submit(
            "deploy", self.deployments.submit_deploy, name, manifest, context_id
        )
        operation_type = (
            OperationType.UPGRADE if kind == UpdateKind.UPGRADE else OperationType.UPDATE
        )
        logger.info(
            f"[{instance_id}] {operation_type.value.capitalize()} from plan "
            f"{previous_plan_id or plan_id} to {plan_id}: task {task_id}"
        )
        return OperationToken(
            operation_type,
            task_id,
            context_id,
            plan_id,
            tuple(plan.post_deploy_errands),
        )

    def deprovision(
        self, instance_id: str, plan_id: str = "", accepts_incomplete: bool = True
    ) -> Optional[OperationToken]:
        """
        Delete an instance's deployment.

        Returns:
            Token of the delete operation, or None when the deployment is
            already gone and the deprovision completed synchronously
        """
        if not accepts_incomplete:
            raise AsyncRequiredError()
        name = deployment_name(instance_id)
        context_id = str(uuid.uuid4())
        plan = self.offering.find_plan(plan_id)

        if plan is not None and plan.pre_delete_errand:
            if self._get_deployment(name) is None:
                logger.info(f"[{instance_id}] Deployment {name} not found, nothing to delete")
                return None
            task_id = self._submit(
                "errand",
                self.deployments.submit_errand,
                name,
                plan.pre_delete_errand,
                context_id,
            )
            logger.info(
                f"[{instance_id}] Running pre-delete errand {plan.pre_delete_errand}: task {task_id}"
            )
            return OperationToken(
                OperationType.DELETE,
                task_id,
                context_id,
                plan_id,
                (plan.pre_delete_errand,),
            )

        try:
            task_id = self._submit(
                "delete", self.deployments.submit_delete, name, context_id
            )
        except DeploymentNotFoundError:
            logger.info(f"[{instance_id}] Deployment {name} not found, nothing to delete")
            return None
        logger.info(f"[{instance_id}] Deleting deployment {name}: task {task_id}")
        return OperationToken(OperationType.DELETE, task_id, context_id, plan_id)

    def bind(
        self,
        instance_id: str,
        binding_id: str,
        service_id: str = "",
        plan_id: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Binding:
        """Return credentials for a binding. Synchronous."""
        if self._get_deployment(deployment_name(instance_id)) is None:
            raise InstanceNotFoundError(f"instance {instance_id} not found")
        logger.info(f"[{instance_id}] Created binding {binding_id}")
        return Binding(credentials=self.credentials_for(instance_id, binding_id))

    def unbind(
        self,
        instance_id: str,
        binding_id: str,
        service_id: str = "",
        plan_id: str = "",
    ) -> None:
        if self._get_deployment(deployment_name(instance_id)) is None:
            raise BindingNotFoundError(f"binding {binding_id} not found")
        logger.info(f"[{instance_id}] Removed binding {binding_id}")

    @staticmethod
    def credentials_for(instance_id: str, binding_id: str) -> Dict[str, str]:
        digest = hashlib.sha256(f"{instance_id}:{binding_id}".encode("utf-8"))
        return {
            "username": f"binding-{binding_id}",
            "password": digest.hexdigest()[:32],
            "deployment": deployment_name(instance_id),
        }

    def last_operation(
        self, instance_id: str, operation: Union[str, OperationToken]
    ) -> LastOperation:
        """
        Report the state of an operation previously accepted for an instance.

        Multi-task operations advance here: once the deploy finishes the
        next post-deploy errand is started, and once a pre-delete errand
        finishes the delete is submitted.

        Args:
            instance_id: Instance the token was issued for
            operation: Serialized or parsed OperationToken

        Returns:
            LastOperation with a state and a human-readable description

        Raises:
            InvalidOperationTokenError: If the token is malformed or has no task
            GatewayError: If the deployment system cannot be queried
        """
        token = (
            operation
            if isinstance(operation, OperationToken)
            else OperationToken.deserialize(operation)
        )
        if token.backend_task_id == 0:
            raise InvalidOperationTokenError("no task ID found in operation data")

        task = self._current_task(deployment_name(instance_id), token)
        state = TASK_STATES[task.state]
        description = self._describe(token, state, task)
        if state == LastOperationState.FAILED:
            logger.error(f"[{instance_id}] {description}")
        else:
            logger.info(f"[{instance_id}] {description} (task {task.id}: {task.state.value})")
        return LastOperation(state=state, description=description)

    # ------------------------------------------------------------------
    # Management surface
    # ------------------------------------------------------------------

    def list_instances(self, offering_id: Optional[str] = None) -> List[Instance]:
        return self.inventory.list_instances(offering_id or self.offering.id)

    def process_instance(
        self, instance: Instance, operation_type: Union[str, OperationType]
    ) -> Optional[OperationToken]:
        """Run a management operation (upgrade or recreate) on one instance."""
        op = OperationType(operation_type)
        if op == OperationType.UPGRADE:
            return self.upgrade(instance.guid, instance.plan_id)
        if op == OperationType.RECREATE:
            return self.recreate(instance.guid, instance.plan_id)
        raise ValueError(f"unsupported operation type: {op.value}")

    def upgrade(self, instance_id: str, plan_id: str) -> Optional[OperationToken]:
        """
        Redeploy an instance with the current manifest for its plan.

        Returns:
            Token of the upgrade, or None when the deployed manifest is
            already current

        Raises:
            PlanNotFoundError: If the plan is not in the catalog
            DeploymentNotFoundError: If the instance has no deployment
            OperationInProgressError: If a task is running on the deployment
            GatewayError: If the deploy could not be submitted
        """
        plan = self._plan(plan_id)
        name = deployment_name(instance_id)
        deployed = self._ready_deployment(instance_id, name)

        manifest = self._generate(name, plan, {}, deployed)
        if manifest == deployed:
            logger.info(f"[{instance_id}] Already up to date, skipping upgrade")
            return None

        context_id = str(uuid.uuid4())
        task_id = self._submit(
            "deploy", self.deployments.submit_deploy, name, manifest, context_id
        )
        logger.info(f"[{instance_id}] Upgrading: task {task_id}")
        return OperationToken(
            OperationType.UPGRADE,
            task_id,
            context_id,
            plan_id,
            tuple(plan.post_deploy_errands),
        )

    def recreate(self, instance_id: str, plan_id: str) -> OperationToken:
        """Recreate every VM of an instance's deployment."""
        self._plan(plan_id)
        name = deployment_name(instance_id)
        self._ready_deployment(instance_id, name)

        context_id = str(uuid.uuid4())
        task_id = self._submit(
            "recreate", self.deployments.submit_recreate, name, context_id
        )
        logger.info(f"[{instance_id}] Recreating: task {task_id}")
        return OperationToken(OperationType.RECREATE, task_id, context_id, plan_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _warner(self, instance_id: str) -> Callable[[str], None]:
        return lambda message: logger.warning(f"[{instance_id}] {message}")

    def _plan(self, plan_id: str) -> Plan:
        plan = self.offering.find_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def _submit(self, action: str, func: Callable[..., Any], *args) -> Any:
        """Call the deployment system once; backend failures become GatewayError."""
        try:
            return func(*args)
        except ClientError:
            raise
        except Exception as e:
            raise GatewayError(f"{action} failed: {e}") from e

    def _get_deployment(self, name: str) -> Optional[Dict[str, Any]]:
        return self._submit("get deployment", self.deployments.get_deployment, name)

    def _generate(
        self,
        name: str,
        plan: Plan,
        parameters: Dict[str, Any],
        previous: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return self._submit(
            "generate manifest", self.manifests.generate, name, plan, parameters, previous
        )

    def _ready_deployment(self, instance_id: str, name: str) -> Dict[str, Any]:
        deployed = self._get_deployment(name)
        if deployed is None:
            raise DeploymentNotFoundError(f"deployment {name} not found")
        tasks = self._submit("list tasks", self.deployments.tasks, name)
        running = [t for t in tasks if TASK_STATES[t.state] == LastOperationState.IN_PROGRESS]
        if running:
            raise OperationInProgressError(
                f"an operation is in progress for instance {instance_id} (task {running[0].id})"
            )
        return deployed

    def _current_task(self, name: str, token: OperationToken) -> Task:
        if not token.errands or not token.context_id:
            return self._submit("poll task", self.deployments.poll_task, token.backend_task_id)

        tasks = self._submit("list tasks", self.deployments.tasks, name, token.context_id)
        if not tasks:
            return self._submit("poll task", self.deployments.poll_task, token.backend_task_id)

        latest = tasks[0]
        if latest.state != TaskState.DONE:
            return latest

        if token.operation_type == OperationType.DELETE:
            if len(tasks) > 1:
                return latest
            try:
                task_id = self._submit(
                    "delete", self.deployments.submit_delete, name, token.context_id
                )
            except DeploymentNotFoundError:
                return latest
            logger.info(f"Pre-delete errand finished, deleting {name}: task {task_id}")
            return Task(id=task_id, state=TaskState.QUEUED, context_id=token.context_id)

        completed_errands = len(tasks) - 1
        if completed_errands >= len(token.errands):
            return latest
        errand = token.errands[completed_errands]
        task_id = self._submit(
            "errand", self.deployments.submit_errand, name, errand, token.context_id
        )
        logger.info(f"Running post-deploy errand {errand} on {name}: task {task_id}")
        return Task(id=task_id, state=TaskState.QUEUED, context_id=token.context_id)

    def _describe(
        self, token: OperationToken, state: LastOperationState, task: Task
    ) -> str:
        name = OPERATION_NAMES[token.operation_type]
        if state == LastOperationState.IN_PROGRESS:
            return f"{name} in progress"
        if state == LastOperationState.SUCCEEDED:
            return f"{name} completed"
        detail = task.result or task.description
        return (
            f"{name} failed: {GENERIC_ERROR_PREFIX} error-message: {detail} "
            f"task-id: {task.id}, operation: {token.operation_type.value}"
        )
