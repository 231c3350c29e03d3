"""Connector abstraction over external identity stores.

This package provides:
- base: connector contract, connector objects and the factory
- memory: dict-backed connector
- rest: JSON/REST connector over requests
- exceptions: connector errors
"""
from .base import (
    ACCOUNT,
    ENABLE,
    GROUP,
    NAME,
    PASSWORD,
    UID,
    Attribute,
    ConnInstance,
    Connector,
    ConnectorFactory,
    ConnectorObject,
    GuardedString,
    OperationOptions,
    SearchResult,
)
from .exceptions import (
    AlreadyExistsError,
    ConnectionFailedError,
    ConnectorAPIError,
    ConnectorError,
    ConnectorInstantiationError,
    UnknownUidError,
)
from .memory import InMemoryConnector
from .rest import RestConnector


def default_factory() -> ConnectorFactory:
    """Factory with the bundled connector implementations registered."""
    factory = ConnectorFactory()
    factory.register("memory", InMemoryConnector)
    factory.register("rest", RestConnector)
    return factory


__all__ = [
    "ACCOUNT",
    "ENABLE",
    "GROUP",
    "NAME",
    "PASSWORD",
    "UID",
    "Attribute",
    "ConnInstance",
    "Connector",
    "ConnectorFactory",
    "ConnectorObject",
    "GuardedString",
    "OperationOptions",
    "SearchResult",
    "AlreadyExistsError",
    "ConnectionFailedError",
    "ConnectorAPIError",
    "ConnectorError",
    "ConnectorInstantiationError",
    "UnknownUidError",
    "InMemoryConnector",
    "RestConnector",
    "default_factory",
]
