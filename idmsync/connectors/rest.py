"""Connector for JSON/REST identity stores.

Handles authentication, token management, and HTTP operations against a
remote store exposing one collection endpoint per object class::

    GET    {baseUrl}/{path}?offset=0&limit=100   -> {"items": [...], "next": "100"}
    GET    {baseUrl}/{path}/{uid}                -> {"id": ..., "name": ..., "attributes": {...}}
    POST   {baseUrl}/{path}                      -> {"id": ...}
    PUT    {baseUrl}/{path}/{uid}                -> {"id": ...}
    DELETE {baseUrl}/{path}/{uid}
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import requests

from .base import (
    ACCOUNT,
    GROUP,
    NAME,
    UID,
    Attribute,
    ConnInstance,
    Connector,
    ConnectorObject,
    GuardedString,
    OperationOptions,
    ResultHandler,
    SearchFilter,
    SearchResult,
)
from .exceptions import ConnectionFailedError, ConnectorAPIError, ConnectorInstantiationError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5

DEFAULT_PATHS = {ACCOUNT: "/users", GROUP: "/groups"}


class RestConnector(Connector):
    """HTTP connector with automatic token management.

    Features:
    - Client-credentials token, refreshed when expired
    - Centralized error handling
    - Offset-based paged search

    Configuration properties:
        baseUrl: store base URL (required)
        tokenUrl, clientId, clientSecret: OAuth2 client credentials (optional)
        paths: object class -> collection path
        authenticatePath: path accepting ``{"username", "password"}`` (optional)
    """

    def __init__(self, conn_instance: ConnInstance):
        super().__init__(conn_instance)
        base_url = conn_instance.conf_value("baseUrl")
        if not base_url:
            raise ConnectorInstantiationError("RestConnector requires 'baseUrl'")
        self.base_url = str(base_url).rstrip("/")
        self.paths: Dict[str, str] = dict(DEFAULT_PATHS)
        self.paths.update(conn_instance.config.get("paths") or {})
        self._session = requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    # ─────────────────────────────────────────────────────────────────────────
    # Authentication
    # ─────────────────────────────────────────────────────────────────────────
    def _get_client_credentials_token(self) -> str:
        """Fetch a token using the client credentials flow."""
        url = self.conn_instance.conf_value("tokenUrl")
        data = {
            "grant_type": "client_credentials",
            "client_id": self.conn_instance.conf_value("clientId"),
            "client_secret": self.conn_instance.conf_value("clientSecret"),
        }
        resp = requests.post(url, data=data, timeout=REQUEST_TIMEOUT)
        if resp.status_code != 200:
            raise ConnectorAPIError(resp.status_code, resp.text, url)
        payload = resp.json()
        # Conservative expiry when the server does not say
        self._token_expires_at = datetime.now() + timedelta(seconds=int(payload.get("expires_in", 60)))
        return payload["access_token"]

    def _headers(self) -> Dict[str, str]:
        if not self.conn_instance.conf_value("tokenUrl"):
            return {}
        # Refresh if token expired or expiring soon (within 10 seconds)
        if (not self._token or not self._token_expires_at
                or datetime.now() >= self._token_expires_at - timedelta(seconds=10)):
            self._token = self._get_client_credentials_token()
        return {"Authorization": f"Bearer {self._token}"}

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = kwargs.pop("headers", {})
        headers.update(self._headers())
        try:
            resp = self._session.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise ConnectionFailedError(f"{method} {url}: {exc}") from exc
        return resp

    def _handle_error(self, resp: requests.Response) -> None:
        """Raise ConnectorAPIError if the response status indicates an error."""
        if resp.status_code >= 400:
            raise ConnectorAPIError(resp.status_code, resp.text, resp.url)

    def _path(self, object_class: str) -> str:
        try:
            return self.paths[object_class]
        except KeyError:
            raise ConnectorAPIError(400, f"Unsupported object class {object_class}", self.base_url)

    # ─────────────────────────────────────────────────────────────────────────
    # (De)serialization
    # ─────────────────────────────────────────────────────────────────────────
    @staticmethod
    def _to_object(object_class: str, data: Dict[str, Any]) -> ConnectorObject:
        attributes = {}
        for name, values in (data.get("attributes") or {}).items():
            if not isinstance(values, list):
                values = [values]
            attributes[name] = Attribute(name, values)
        uid = str(data["id"])
        return ConnectorObject(object_class, uid, str(data.get("name") or uid), attributes)

    @staticmethod
    def _to_payload(attrs: Iterable[Attribute]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"attributes": {}}
        for attr in attrs:
            values = [v.reveal() if isinstance(v, GuardedString) else v for v in attr.values]
            if attr.name == NAME:
                payload["name"] = values[0] if values else None
            elif attr.name == UID:
                payload["id"] = values[0] if values else None
            else:
                payload["attributes"][attr.name] = values
        return payload

    # ─────────────────────────────────────────────────────────────────────────
    # Connector contract
    # ─────────────────────────────────────────────────────────────────────────
    def get_object(self, object_class: str, uid: str, options: Optional[OperationOptions] = None):
        params = {}
        if options and options.attributes_to_get:
            params["attributes"] = ",".join(options.attributes_to_get)
        resp = self._request("GET", f"{self._path(object_class)}/{uid}", params=params)
        if resp.status_code == 404:
            return None
        self._handle_error(resp)
        return self._to_object(object_class, resp.json())

    def search(
        self,
        object_class: str,
        filter: Optional[SearchFilter],
        handler: ResultHandler,
        page_size: Optional[int] = None,
        paged_results_cookie: Optional[str] = None,
        order_by: Optional[List[str]] = None,
    ) -> SearchResult:
        params: Dict[str, Any] = {"offset": paged_results_cookie or 0}
        if page_size:
            params["limit"] = page_size
        if order_by:
            params["orderBy"] = ",".join(order_by)

        resp = self._request("GET", self._path(object_class), params=params)
        self._handle_error(resp)
        body = resp.json()

        for item in body.get("items") or []:
            obj = self._to_object(object_class, item)
            if filter is not None and not filter(obj):
                continue
            if not handler(obj):
                break
        cookie = body.get("next")
        return SearchResult(
            paged_results_cookie=str(cookie) if cookie is not None else None,
            remaining_paged_results=int(body.get("remaining", -1 if cookie else 0)),
        )

    def authenticate(self, username: str, password: str, options: Optional[OperationOptions] = None):
        path = self.conn_instance.conf_value("authenticatePath")
        if not path:
            return None
        resp = self._request("POST", path, json={"username": username, "password": password})
        if resp.status_code in (401, 403):
            return None
        self._handle_error(resp)
        return resp.json().get("id")

    def test(self) -> None:
        resp = self._request("GET", self.conn_instance.conf_value("healthPath", "/health"))
        self._handle_error(resp)

    def create(self, object_class: str, attrs: Iterable[Attribute], options: Optional[OperationOptions] = None) -> str:
        resp = self._request("POST", self._path(object_class), json=self._to_payload(attrs))
        self._handle_error(resp)
        return str(resp.json()["id"])

    def update(self, object_class: str, uid: str, attrs: Iterable[Attribute],
               options: Optional[OperationOptions] = None) -> str:
        resp = self._request("PUT", f"{self._path(object_class)}/{uid}", json=self._to_payload(attrs))
        self._handle_error(resp)
        body = resp.json() if resp.content else {}
        return str(body.get("id") or uid)

    def delete(self, object_class: str, uid: str, options: Optional[OperationOptions] = None) -> None:
        resp = self._request("DELETE", f"{self._path(object_class)}/{uid}")
        if resp.status_code == 404:
            logger.warning(f"{object_class} {uid} already absent from {self.base_url}")
            return
        self._handle_error(resp)
