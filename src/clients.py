"""
HTTP client for the broker's management API.
"""

import logging
import time
from typing import List, Optional, Union

import requests

from errors import (
    ClientError,
    DeploymentNotFoundError,
    GatewayError,
    InstanceNotFoundError,
    OperationInProgressError,
)
from models import Instance, LastOperation
from operation_token import OperationToken, OperationType

logger = logging.getLogger(__name__)

BROKER_API_VERSION = "2.14"


class BrokerServicesClient:
    """REST client for the management API of a running broker.

    Exposes the same management surface as BrokerCore so the fleet iterator
    can drive a remote broker.
    """

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 2.0,
        verify: bool = True,
    ):
        """
        Initialize the broker services client.

        Args:
            base_url: Broker URL, e.g. https://broker.example.com
            username: Basic auth user of the broker
            password: Basic auth password of the broker
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
            verify: Verify the broker's TLS certificate
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        self.session = requests.Session()
        if username:
            self.session.auth = (username, password)
        self.session.verify = verify
        self.session.headers.update({"X-Broker-API-Version": BROKER_API_VERSION})

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request_with_retry(self, method: str, url: str, **kwargs) -> dict:
        """
        Execute an idempotent request, backing off on transient errors.

        Args:
            method: HTTP method
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            Dictionary with 'response' and 'status_code' keys

        Raises:
            GatewayError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except requests.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code} ({self._description(resp)}), attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {self._description(resp)}"
                time.sleep(delay)
                continue

            return {"response": resp, "status_code": resp.status_code}

        raise GatewayError(f"Max retries exceeded. Last error: {last_error}")

    def _request_once(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request that must not be repeated, such as an operation submission."""
        try:
            return self.session.request(
                method.upper(), url, timeout=self.timeout_s, **kwargs
            )
        except requests.RequestException as e:
            raise GatewayError(f"{method.upper()} {url} failed: {e}") from e

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 120.0)

    @staticmethod
    def _description(resp) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(data, dict):
            return data.get("description") or data.get("message") or resp.text[:200]
        return resp.text[:200]

    def list_instances(self, offering_id: Optional[str] = None) -> List[Instance]:
        """
        List the service instances the broker manages.

        Args:
            offering_id: Accepted for interface compatibility; the broker
                only manages its own offering

        Returns:
            List of Instance objects

        Raises:
            GatewayError: If the API call fails
        """
        result = self._request_with_retry("GET", self._url("mgmt/service_instances"))
        resp = result["response"]
        if resp.status_code != 200:
            raise GatewayError(
                f"List instances failed ({resp.status_code}): {self._description(resp)}"
            )
        return [Instance.from_dict(item) for item in resp.json()]

    def process_instance(
        self, instance: Instance, operation_type: Union[str, OperationType]
    ) -> Optional[OperationToken]:
        """
        Ask the broker to upgrade or recreate one instance.

        Args:
            instance: Instance to process
            operation_type: "upgrade" or "recreate"

        Returns:
            Token of the accepted operation, or None if the broker skipped it

        Raises:
            InstanceNotFoundError: 404, the instance is gone
            DeploymentNotFoundError: 410, the instance has no deployment
            OperationInProgressError: 409, the instance is busy
            ClientError: Any other 4xx
            GatewayError: 5xx or transport failure
        """
        op = OperationType(operation_type)
        url = self._url(f"mgmt/service_instances/{instance.guid}")
        resp = self._request_once(
            "PATCH",
            url,
            params={"operation_type": op.value},
            json={"plan_id": instance.plan_id},
        )

        if resp.status_code == 202:
            return OperationToken.deserialize(resp.json()["operation"])
        if resp.status_code == 204:
            return None

        description = self._description(resp)
        if resp.status_code == 404:
            raise InstanceNotFoundError(description)
        if resp.status_code == 410:
            raise DeploymentNotFoundError(description)
        if resp.status_code == 409:
            raise OperationInProgressError(description)
        if 400 <= resp.status_code < 500:
            raise ClientError(f"{op.value} rejected ({resp.status_code}): {description}")
        raise GatewayError(f"{op.value} failed ({resp.status_code}): {description}")

    def last_operation(
        self, instance_id: str, operation: Union[str, OperationToken]
    ) -> LastOperation:
        """
        Poll the state of an operation the broker accepted.

        Raises:
            ClientError: If the broker rejects the token
            GatewayError: If the API call fails
        """
        raw = operation.serialize() if isinstance(operation, OperationToken) else operation
        url = self._url(f"mgmt/service_instances/{instance_id}/last_operation")
        result = self._request_with_retry("GET", url, params={"operation": raw})
        resp = result["response"]
        if resp.status_code == 200:
            return LastOperation.from_dict(resp.json())
        if 400 <= resp.status_code < 500:
            raise ClientError(
                f"Last operation rejected ({resp.status_code}): {self._description(resp)}"
            )
        raise GatewayError(
            f"Last operation failed ({resp.status_code}): {self._description(resp)}"
        )
