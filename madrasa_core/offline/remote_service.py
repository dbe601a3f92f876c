# =============================================================================
# madrasa_core/offline/remote_service.py
# REST client for the madrasa data service
# =============================================================================
"""
RemoteDataService - thin JSON client for the per-collection REST endpoints.

    POST   /api/<collection>        create
    PUT    /api/<collection>/<id>   update
    DELETE /api/<collection>/<id>   delete
    GET    /api/<collection>        fetch all

Failures are classified for the retry policy: connection errors, timeouts
and 5xx responses are transient; any other non-2xx response is permanent.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import requests

from madrasa_core.errors import PermanentRequestFailure, TransientNetworkFailure
from madrasa_core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RemoteConfig:
    """Connection settings for the remote data service."""
    base_url: str
    timeout: float = 30.0
    headers: Dict[str, str] = field(default_factory=dict)
    api_prefix: str = "/api"


class RemoteDataService:
    """
    Remote data service client.

    Usage:
        remote = RemoteDataService(RemoteConfig(base_url="https://madrasa.example.com"))
        created = remote.create("leaves", {"studentId": 4, "fromDate": "2025-01-02"})
    """

    def __init__(self, config: RemoteConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if config.headers:
            self.session.headers.update(config.headers)

    def _url(self, collection: str, record_id: Optional[Union[int, str]] = None) -> str:
        base = f"{self.config.base_url.rstrip('/')}{self.config.api_prefix}/{collection}"
        return f"{base}/{record_id}" if record_id is not None else base

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=payload,
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientNetworkFailure(f"{method} {url} failed: {e}", url=url) from e

        if response.status_code >= 500:
            raise TransientNetworkFailure(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                url=url,
            )
        if not response.ok:
            body = self._error_body(response)
            raise PermanentRequestFailure(
                body.get("message") or f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                error=body.get("error"),
                url=url,
            )

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(f"{method} {url} returned a non-JSON body")
            return None

    @staticmethod
    def _error_body(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"message": response.text or None}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _record_body(data: Any, method: str, url: str) -> Dict[str, Any]:
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise PermanentRequestFailure(
                f"{method} {url} returned a {type(data).__name__}, expected a JSON object",
                error="invalid_response",
                url=url,
            )
        return data

    def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a record; returns the server's copy including its id."""
        url = self._url(collection)
        return self._record_body(self._request("POST", url, payload), "POST", url)

    def update(self, collection: str, record_id: Union[int, str], payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._url(collection, record_id)
        return self._record_body(self._request("PUT", url, payload), "PUT", url)

    def delete(self, collection: str, record_id: Union[int, str]) -> None:
        self._request("DELETE", self._url(collection, record_id))

    def fetch_all(self, collection: str) -> List[Dict[str, Any]]:
        """Authoritative list of a collection's records."""
        data = self._request("GET", self._url(collection))
        if isinstance(data, dict):
            data = data.get("data", [])
        return list(data or [])
