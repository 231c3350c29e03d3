"""Connector contract and the value types exchanged with external resources."""
from __future__ import annotations
import abc
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from .exceptions import ConnectorInstantiationError

logger = logging.getLogger(__name__)

UID = "__UID__"
NAME = "__NAME__"
PASSWORD = "__PASSWORD__"
ENABLE = "__ENABLE__"

ACCOUNT = "__ACCOUNT__"
GROUP = "__GROUP__"


class GuardedString:
    """Secret value that does not leak through ``repr``/``str``."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "GuardedString(***)"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        return isinstance(other, GuardedString) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)


@dataclass
class Attribute:
    name: str
    values: List[Any] = field(default_factory=list)

    @property
    def single_value(self) -> Any:
        return self.values[0] if self.values else None


@dataclass
class ConnectorObject:
    """External object: always keyed by a Uid and a Name."""
    object_class: str
    uid: str
    name: str
    attributes: Dict[str, Attribute] = field(default_factory=dict)

    @classmethod
    def build(cls, object_class: str, uid: str, name: Optional[str] = None, /, **attrs: Any) -> "ConnectorObject":
        """Build an object from keyword attributes (scalars are wrapped in lists).

        ``uid`` and ``name`` are positional only, so remote attributes may
        themselves be called ``uid`` or ``name``.
        """
        attributes = {}
        for attr_name, value in attrs.items():
            values = list(value) if isinstance(value, (list, tuple, set)) else [value]
            attributes[attr_name] = Attribute(attr_name, values)
        return cls(object_class, uid, name or uid, attributes)

    def get_attribute_by_name(self, name: str) -> Optional[Attribute]:
        if name == UID:
            return Attribute(UID, [self.uid])
        if name == NAME:
            return Attribute(NAME, [self.name])
        return self.attributes.get(name)

    def all_attributes(self) -> List[Attribute]:
        attrs = list(self.attributes.values())
        if UID not in self.attributes:
            attrs.append(Attribute(UID, [self.uid]))
        if NAME not in self.attributes:
            attrs.append(Attribute(NAME, [self.name]))
        return attrs


@dataclass
class OperationOptions:
    attributes_to_get: List[str] = field(default_factory=list)
    page_size: Optional[int] = None
    paged_results_cookie: Optional[str] = None
    sort_keys: List[str] = field(default_factory=list)


@dataclass
class SearchResult:
    paged_results_cookie: Optional[str] = None
    remaining_paged_results: int = -1


@dataclass
class ConnInstance:
    """Connector bundle reference plus its configuration properties."""
    connector_name: str
    config: Dict[str, Any] = field(default_factory=dict)

    def conf_value(self, name: str, default: Any = None) -> Any:
        value = self.config.get(name)
        if value is None or value == [] or value == "":
            return default
        if isinstance(value, list):
            return value[0]
        return value


ResultHandler = Callable[[ConnectorObject], bool]
SearchFilter = Callable[[ConnectorObject], bool]


class Connector(abc.ABC):
    """Operations the reconciliation core needs from an external resource."""

    def __init__(self, conn_instance: ConnInstance):
        self.conn_instance = conn_instance

    @abc.abstractmethod
    def get_object(
        self, object_class: str, uid: str, options: Optional[OperationOptions] = None
    ) -> Optional[ConnectorObject]:
        """Return the object with the given Uid or None."""

    @abc.abstractmethod
    def search(
        self,
        object_class: str,
        filter: Optional[SearchFilter],
        handler: ResultHandler,
        page_size: Optional[int] = None,
        paged_results_cookie: Optional[str] = None,
        order_by: Optional[List[str]] = None,
    ) -> SearchResult:
        """Feed matching objects to ``handler`` until it returns False."""

    @abc.abstractmethod
    def authenticate(
        self, username: str, password: str, options: Optional[OperationOptions] = None
    ) -> Optional[str]:
        """Return the Uid of the authenticated object or None."""

    @abc.abstractmethod
    def test(self) -> None:
        """Raise if the resource is not reachable."""

    @abc.abstractmethod
    def create(self, object_class: str, attrs: Iterable[Attribute],
               options: Optional[OperationOptions] = None) -> str:
        """Create an object and return its Uid."""

    @abc.abstractmethod
    def update(self, object_class: str, uid: str, attrs: Iterable[Attribute],
               options: Optional[OperationOptions] = None) -> str:
        """Replace the given attributes and return the (possibly new) Uid."""

    @abc.abstractmethod
    def delete(self, object_class: str, uid: str, options: Optional[OperationOptions] = None) -> None:
        """Delete an object."""

    def get_operation_options(self, mapping_items: Iterable[Any]) -> OperationOptions:
        """Build options restricting returned attributes to the mapped ones."""
        attrs = []
        for item in mapping_items:
            ext_name = getattr(item, "ext_attr_name", None)
            if ext_name and ext_name not in attrs and not getattr(item, "password", False):
                attrs.append(ext_name)
        return OperationOptions(attributes_to_get=attrs)


class ConnectorFactory:
    """Registry of connector implementations, building one instance per resource.

    Usage:
        factory = ConnectorFactory()
        factory.register("memory", InMemoryConnector)
        connector = factory.get_connector(resource)
    """

    def __init__(self):
        self._implementations: Dict[str, Type[Connector]] = {}
        self._connectors: Dict[str, Connector] = {}
        self._lock = threading.Lock()

    def register(self, connector_name: str, implementation: Type[Connector]) -> None:
        self._implementations[connector_name] = implementation

    def create_connector(self, conn_instance: ConnInstance) -> Connector:
        implementation = self._implementations.get(conn_instance.connector_name)
        if implementation is None:
            raise ConnectorInstantiationError(f"Unknown connector '{conn_instance.connector_name}'")
        try:
            return implementation(conn_instance)
        except Exception as exc:
            raise ConnectorInstantiationError(
                f"Could not instantiate connector '{conn_instance.connector_name}': {exc}"
            ) from exc

    def get_connector(self, resource: Any) -> Connector:
        """Return the cached connector for ``resource`` (built on first use)."""
        with self._lock:
            connector = self._connectors.get(resource.key)
            if connector is None:
                connector = self.create_connector(resource.conn_instance)
                self._connectors[resource.key] = connector
                logger.info(f"Connector '{resource.conn_instance.connector_name}' ready for {resource.key}")
            return connector
