"""
Broker decorator that keeps binding credentials in a credential store.
"""

import logging
from typing import Any, Callable, Dict, Optional

from gateways import CredentialStoreGateway
from models import Binding
from retry import is_host_unresolvable, retry_with_backoff

logger = logging.getLogger(__name__)


def credential_key(service_id: str, instance_id: str, binding_id: str) -> str:
    return f"/c/{service_id}/{instance_id}/{binding_id}/credentials"


class CredentialStoreBroker:
    """Wraps a broker; bind and unbind also write to the credential store.

    Everything else is delegated to the wrapped broker unchanged.
    """

    def __init__(self, broker: Any, store: CredentialStoreGateway, service_name: str = ""):
        self._broker = broker
        self._store = store
        self.service_name = service_name

    def __getattr__(self, name: str) -> Any:
        return getattr(self._broker, name)

    def bind(
        self,
        instance_id: str,
        binding_id: str,
        service_id: str = "",
        plan_id: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Binding:
        """
        Bind through the wrapped broker, then store the credentials.

        The store write does not affect the result: a failed write is logged
        and the wrapped broker's binding is returned as is.
        """
        binding = self._broker.bind(instance_id, binding_id, service_id, plan_id, parameters)

        key = credential_key(service_id, instance_id, binding_id)
        try:
            self._store.set(key, binding.credentials)
            logger.info(f"[{instance_id}] Stored credentials for binding {binding_id} at {key}")
        except Exception as e:
            logger.error(
                f"[{instance_id}] Failed to store credentials for binding "
                f"{binding_id} at {key}: {e}"
            )
        return binding

    def unbind(
        self,
        instance_id: str,
        binding_id: str,
        service_id: str = "",
        plan_id: str = "",
    ) -> None:
        self._broker.unbind(instance_id, binding_id, service_id, plan_id)

        key = credential_key(service_id, instance_id, binding_id)
        try:
            self._store.delete(key)
        except Exception as e:
            logger.warning(f"[{instance_id}] Could not remove credentials at {key}: {e}")


def augment(
    broker: Any,
    store_factory: Optional[Callable[[], CredentialStoreGateway]],
    service_name: str = "",
    max_retries: int = 10,
    initial_delay: float = 0.016,
    sleep: Optional[Callable[[float], None]] = None,
) -> Any:
    """
    Wrap a broker with credential store support when a store is configured.

    The store is created and authenticated with retries while its host name
    cannot be resolved; any other error propagates at once.

    Args:
        broker: Broker to wrap
        store_factory: Builds a credential store client, or None to disable
        service_name: Name used in log messages
        max_retries: Retries before giving up on an unresolvable host
        initial_delay: First backoff delay in seconds, doubled each retry
        sleep: Sleep function, for tests

    Returns:
        The broker itself, or a CredentialStoreBroker wrapping it
    """
    if store_factory is None:
        return broker

    def connect() -> CredentialStoreGateway:
        store = store_factory()
        store.authenticate()
        return store

    store = retry_with_backoff(
        connect,
        is_host_unresolvable,
        max_attempts=max_retries + 1,
        initial_delay=initial_delay,
        sleep=sleep,
    )
    logger.info(f"Credential store enabled for {service_name or 'broker'}")
    return CredentialStoreBroker(broker, store, service_name)
