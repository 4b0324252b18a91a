"""HTTP adapter for the terminal's device gateway.

The gateway exposes the vendor SDK's person and face operations as JSON
POST endpoints. Every request carries the caller's ``deviceKey`` and
``secret``; every response is ``{code, msg|message, data}``. This is the
only module that knows the gateway's paths and field names.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from enrollment_engine.errors import DeviceCommunicationError
from enrollment_engine.interfaces import Credentials, DeviceOperationResult, IdentityPayload
from enrollment_engine.logging_config import get_logger, mask_key

logger = get_logger(__name__)

ENDPOINTS = {
    "test_connection": "/api/device/test",
    "get_identity": "/api/person/get",
    "query_identity": "/api/person/find",
    "create_identity": "/api/person/create",
    "merge_identity": "/api/person/merge",
    "delete_identity": "/api/person/delete",
    "merge_face": "/api/face/merge",
    "delete_face": "/api/face/delete",
    "list_identities": "/api/person/list",
}


class GatewayDeviceClient:
    """DeviceClient backed by the device gateway's REST API.

    Transport failures (connection refused, timeouts, HTTP 5xx, non-JSON
    bodies) raise DeviceCommunicationError. An empty body is returned as
    None, the SDK's "no response" case.

    Attributes:
        base_url: Gateway base URL
        timeout: Per-request timeout in seconds
        session: Pooled requests session

    Example:
        >>> client = GatewayDeviceClient("http://localhost:8081", timeout=120)
        >>> result = client.test_connection(Credentials("A" * 16, "secret"))
        >>> result.succeeded
        True
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        verify_ssl: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_ssl = verify_ssl

        if session is None:
            # No transport-level retries: a retried POST could double-create
            session = requests.Session()
            adapter = HTTPAdapter(max_retries=0, pool_maxsize=1)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    def _post(
        self, operation: str, credentials: Credentials, body: Optional[Dict[str, Any]] = None
    ) -> Optional[DeviceOperationResult]:
        payload: Dict[str, Any] = {
            "deviceKey": credentials.device_key,
            "secret": credentials.secret,
        }
        if body:
            payload.update(body)

        url = f"{self.base_url}{ENDPOINTS[operation]}"
        logger.debug(f"{operation} -> {url} (device={mask_key(credentials.device_key)})")

        try:
            response = self.session.post(
                url, json=payload, timeout=self.timeout, verify=self.verify_ssl
            )
        except requests.RequestException as e:
            raise DeviceCommunicationError(f"Device gateway unreachable during {operation}: {e}") from e

        if response.status_code >= 500:
            raise DeviceCommunicationError(
                f"Device gateway error during {operation}: HTTP {response.status_code}"
            )

        if not response.content or not response.content.strip():
            logger.debug(f"{operation} returned an empty body")
            return None

        try:
            body_json = response.json()
        except ValueError as e:
            raise DeviceCommunicationError(
                f"Device gateway returned non-JSON body during {operation}"
            ) from e

        return self._to_result(body_json, operation)

    @staticmethod
    def _to_result(body: Any, operation: str) -> Optional[DeviceOperationResult]:
        if body is None:
            return None
        if not isinstance(body, dict):
            raise DeviceCommunicationError(
                f"Unexpected gateway response for {operation}: {type(body).__name__}"
            )

        code = body.get("code")
        if code is None:
            raise DeviceCommunicationError(f"Gateway response for {operation} has no code")

        message = body.get("msg")
        if message is None:
            message = body.get("message", "")
        return DeviceOperationResult(code=str(code), message=str(message), data=body.get("data"))

    @staticmethod
    def _identity_body(identity: IdentityPayload) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "sn": identity.employee_id,
            "name": identity.display_name,
            "type": identity.person_type,
            "verifyStyle": identity.verification_style,
        }
        if identity.face_image is not None:
            body["imgBase64"] = identity.face_image
        return body

    def test_connection(self, credentials: Credentials) -> Optional[DeviceOperationResult]:
        return self._post("test_connection", credentials)

    def get_identity(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        return self._post("get_identity", credentials, {"sn": employee_id})

    def query_identity(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        return self._post("query_identity", credentials, {"sn": employee_id})

    def create_identity(
        self, credentials: Credentials, identity: IdentityPayload
    ) -> Optional[DeviceOperationResult]:
        return self._post("create_identity", credentials, self._identity_body(identity))

    def merge_identity(
        self, credentials: Credentials, identity: IdentityPayload
    ) -> Optional[DeviceOperationResult]:
        return self._post("merge_identity", credentials, self._identity_body(identity))

    def delete_identity(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        return self._post("delete_identity", credentials, {"sn": employee_id})

    def merge_face(
        self, credentials: Credentials, employee_id: str, image_base64: str
    ) -> Optional[DeviceOperationResult]:
        return self._post("merge_face", credentials, {"sn": employee_id, "imgBase64": image_base64})

    def delete_face(self, credentials: Credentials, employee_id: str) -> Optional[DeviceOperationResult]:
        return self._post("delete_face", credentials, {"sn": employee_id})

    def list_identities(self, credentials: Credentials) -> Optional[DeviceOperationResult]:
        return self._post("list_identities", credentials)

    def close(self) -> None:
        self.session.close()

    def __repr__(self) -> str:
        return f"GatewayDeviceClient(base_url='{self.base_url}', timeout={self.timeout})"
