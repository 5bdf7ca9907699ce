"""
API Client for the Secure Unlocker control plane

Signs every request with an Ed25519 private key:

    X-Signature:  hex(sign("METHOD:PATH?QUERY:TIMESTAMP:sha256hex(body)"))
    X-Timestamp:  unix seconds
    X-Public-Key: hex of the raw 32-byte public key

The exact body bytes that were hashed are the bytes sent.
"""
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from secure_unlocker.core.signing.keys import load_private_key
from secure_unlocker.core.signing.verify import sign_request
from secure_unlocker.core.volumes.models import validate_volume_name

logger = logging.getLogger(__name__)

# Configuration from environment
API_BASE_URL = os.getenv("SECURE_UNLOCKER_URL", "http://127.0.0.1:3456")


class UnlockerClientError(Exception):
    """The server rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UnlockerClient:
    """
    HTTP client for the Secure Unlocker API.

    Pass `http_client` to reuse an existing httpx.Client (for example a
    FastAPI TestClient); otherwise one is created for base_url.
    """

    def __init__(
        self,
        private_key,  # Ed25519PrivateKey
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        verify_tls: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._private_key = private_key
        self.base_url = (base_url or API_BASE_URL).rstrip("/")
        self._clock = clock
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(base_url=self.base_url, timeout=timeout, verify=verify_tls)

    @classmethod
    def from_key_file(cls, key_path: str, **kwargs) -> "UnlockerClient":
        """Create a client from a PEM private key file."""
        path = Path(key_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Signing key not found: {path}")
        return cls(load_private_key(path), **kwargs)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        """Make a (signed) request and return the decoded JSON body."""
        signing_path = path
        if params:
            signing_path = f"{path}?{urlencode(params)}"

        body = b""
        headers = {}
        if json_data is not None:
            body = json.dumps(json_data).encode("utf-8")
            headers["Content-Type"] = "application/json"

        if signed:
            headers.update(
                sign_request(self._private_key, method, signing_path, body, timestamp=int(self._clock()))
            )

        try:
            response = self._http.request(method, signing_path, headers=headers, content=body or None)
        except httpx.RequestError as e:
            logger.error(f"Request error: {e}")
            raise UnlockerClientError(f"Request failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            message = payload.get("error") if isinstance(payload, dict) else None
            message = message or f"HTTP {response.status_code}"
            logger.debug(f"API error {response.status_code}: {message}")
            raise UnlockerClientError(message, status_code=response.status_code)
        return payload

    def health(self) -> Dict[str, Any]:
        """Calls: GET /health (unsigned)"""
        return self._request("GET", "/health", signed=False)

    def list_volumes(self) -> Dict[str, str]:
        """Calls: GET /list"""
        return self._request("GET", "/list")

    def status(self, name: str) -> Dict[str, Any]:
        """Calls: GET /status/{name}"""
        validate_volume_name(name)
        return self._request("GET", f"/status/{name}")

    def mount(self, name: str, password: str) -> Dict[str, Any]:
        """Calls: POST /mount/{name} with {"password": ...}"""
        validate_volume_name(name)
        return self._request("POST", f"/mount/{name}", json_data={"password": password})

    def unmount(self, name: str) -> Dict[str, Any]:
        """Calls: POST /unmount/{name}"""
        validate_volume_name(name)
        return self._request("POST", f"/unmount/{name}")
