"""Dict-backed connector used for demos, tests and loopback resources."""
from __future__ import annotations
import copy
import logging
import threading
import uuid
from typing import Dict, Iterable, List, Optional

from .base import (
    NAME,
    PASSWORD,
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
from .exceptions import AlreadyExistsError, ConnectionFailedError, UnknownUidError

logger = logging.getLogger(__name__)


class InMemoryConnector(Connector):
    """Connector keeping objects in process memory.

    Configuration properties:
        available: set to false to simulate an unreachable resource
        objects: optional seed, ``{object_class: [{"__UID__": ..., attr: value}]}``

    Every write is recorded in ``operations`` as ``(verb, object_class, uid)``
    so that callers can assert on the propagation order.
    """

    def __init__(self, conn_instance: Optional[ConnInstance] = None):
        super().__init__(conn_instance or ConnInstance("memory"))
        self._objects: Dict[str, Dict[str, ConnectorObject]] = {}
        self._lock = threading.RLock()
        self.operations: List[tuple] = []
        self.available = str(self.conn_instance.conf_value("available", True)).lower() != "false"

        for object_class, seeds in (self.conn_instance.config.get("objects") or {}).items():
            for seed in seeds:
                seed = dict(seed)
                uid = str(seed.pop(UID))
                name = str(seed.pop(NAME, uid))
                self.put(ConnectorObject.build(object_class, uid, name, **seed))

    # ─────────────────────────────────────────────────────────────────────────
    # Direct access (not part of the connector contract)
    # ─────────────────────────────────────────────────────────────────────────
    def put(self, obj: ConnectorObject) -> None:
        with self._lock:
            self._objects.setdefault(obj.object_class, {})[obj.uid] = copy.deepcopy(obj)

    def objects(self, object_class: str) -> List[ConnectorObject]:
        with self._lock:
            return [copy.deepcopy(o) for o in self._objects.get(object_class, {}).values()]

    def _check_available(self) -> None:
        if not self.available:
            raise ConnectionFailedError(f"Resource backed by {self.conn_instance.connector_name} is unreachable")

    # ─────────────────────────────────────────────────────────────────────────
    # Connector contract
    # ─────────────────────────────────────────────────────────────────────────
    def get_object(self, object_class: str, uid: str, options: Optional[OperationOptions] = None):
        self._check_available()
        with self._lock:
            obj = self._objects.get(object_class, {}).get(uid)
            if obj is None:
                return None
            return self._filtered(obj, options)

    def search(
        self,
        object_class: str,
        filter: Optional[SearchFilter],
        handler: ResultHandler,
        page_size: Optional[int] = None,
        paged_results_cookie: Optional[str] = None,
        order_by: Optional[List[str]] = None,
    ) -> SearchResult:
        self._check_available()
        with self._lock:
            candidates = [copy.deepcopy(o) for o in self._objects.get(object_class, {}).values()]

        sort_keys = order_by or [UID]
        candidates.sort(key=lambda o: tuple(_sort_value(o, k) for k in sort_keys))
        if filter is not None:
            candidates = [o for o in candidates if filter(o)]

        offset = int(paged_results_cookie) if paged_results_cookie else 0
        end = len(candidates) if not page_size else min(offset + page_size, len(candidates))

        for obj in candidates[offset:end]:
            if not handler(obj):
                break

        if end < len(candidates):
            return SearchResult(paged_results_cookie=str(end), remaining_paged_results=len(candidates) - end)
        return SearchResult(paged_results_cookie=None, remaining_paged_results=0)

    def authenticate(self, username: str, password: str, options: Optional[OperationOptions] = None):
        self._check_available()
        with self._lock:
            for objects in self._objects.values():
                for obj in objects.values():
                    if obj.name != username:
                        continue
                    stored = obj.get_attribute_by_name(PASSWORD)
                    value = stored.single_value if stored else None
                    if isinstance(value, GuardedString):
                        value = value.reveal()
                    if value is not None and value == password:
                        return obj.uid
        return None

    def test(self) -> None:
        self._check_available()

    def create(self, object_class: str, attrs: Iterable[Attribute], options: Optional[OperationOptions] = None) -> str:
        self._check_available()
        attributes = {a.name: Attribute(a.name, list(a.values)) for a in attrs}
        name_attr = attributes.pop(NAME, None)
        uid_attr = attributes.pop(UID, None)
        name = name_attr.single_value if name_attr else None
        uid = (uid_attr.single_value if uid_attr else None) or name or str(uuid.uuid4())

        with self._lock:
            existing = self._objects.setdefault(object_class, {})
            if uid in existing:
                raise AlreadyExistsError(f"{object_class} {uid} already exists")
            existing[uid] = ConnectorObject(object_class, uid, name or uid, attributes)
            self.operations.append(("create", object_class, uid))
        logger.debug(f"Created {object_class} {uid}")
        return uid

    def update(self, object_class: str, uid: str, attrs: Iterable[Attribute],
               options: Optional[OperationOptions] = None) -> str:
        self._check_available()
        with self._lock:
            objects = self._objects.get(object_class, {})
            obj = objects.get(uid)
            if obj is None:
                raise UnknownUidError(f"{object_class} {uid} not found")
            for attr in attrs:
                if attr.name == UID:
                    continue
                if attr.name == NAME:
                    obj.name = attr.single_value or obj.name
                elif attr.values:
                    obj.attributes[attr.name] = Attribute(attr.name, list(attr.values))
                else:
                    obj.attributes.pop(attr.name, None)
            self.operations.append(("update", object_class, uid))
        return uid

    def delete(self, object_class: str, uid: str, options: Optional[OperationOptions] = None) -> None:
        self._check_available()
        with self._lock:
            if self._objects.get(object_class, {}).pop(uid, None) is None:
                raise UnknownUidError(f"{object_class} {uid} not found")
            self.operations.append(("delete", object_class, uid))

    @staticmethod
    def _filtered(obj: ConnectorObject, options: Optional[OperationOptions]) -> ConnectorObject:
        result = copy.deepcopy(obj)
        if options and options.attributes_to_get:
            wanted = set(options.attributes_to_get)
            result.attributes = {k: v for k, v in result.attributes.items() if k in wanted}
        return result


def _sort_value(obj: ConnectorObject, name: str) -> str:
    attr = obj.get_attribute_by_name(name)
    value = attr.single_value if attr else None
    return "" if value is None else str(value)
