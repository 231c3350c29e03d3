"""Entitlements and realm-scoped authorization for the logic layer.

An :class:`AuthContext` maps each entitlement the caller holds to the realms
where it applies. Logic methods declare what they need with
:func:`requires_entitlement`; realm checks are done with
:func:`get_effective_realms` and :func:`security_checks`.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional, Set

from .errors import DelegatedAdministrationError, UnauthorizedError
from .model import AnyKind
from .store import ROOT_REALM, is_in_realm

logger = logging.getLogger(__name__)


class Entitlement:
    REMEDIATION_LIST = "REMEDIATION_LIST"
    REMEDIATION_READ = "REMEDIATION_READ"
    REMEDIATION_DELETE = "REMEDIATION_DELETE"
    REMEDIATION_REMEDY = "REMEDIATION_REMEDY"
    RESOURCE_READ = "RESOURCE_READ"
    RESOURCE_LIST_CONNOBJECT = "RESOURCE_LIST_CONNOBJECT"
    RESOURCE_GET_CONNOBJECT = "RESOURCE_GET_CONNOBJECT"
    RESOURCE_CHECK = "RESOURCE_CHECK"
    TASK_EXECUTE = "TASK_EXECUTE"
    TASK_READ = "TASK_READ"

    ANY_ACTIONS = ("SEARCH", "READ", "CREATE", "UPDATE", "DELETE")

    @staticmethod
    def for_kind(kind: AnyKind, action: str) -> str:
        """Entitlement name for ``action`` on ``kind``, e.g. ``GROUP_UPDATE``."""
        return f"{AnyKind(kind).value}_{action}"

    @classmethod
    def all(cls) -> Set[str]:
        names = {value for name, value in vars(cls).items() if name.isupper() and isinstance(value, str)}
        for kind in AnyKind:
            names.update(cls.for_kind(kind, action) for action in cls.ANY_ACTIONS)
        return names


@dataclass
class AuthContext:
    """Authenticated caller and its entitlement -> realms map."""
    username: str
    entitlements: Dict[str, Set[str]] = field(default_factory=dict)

    def realms_for(self, entitlement: str) -> Set[str]:
        return set(self.entitlements.get(entitlement, set()))

    def has(self, entitlement: str) -> bool:
        return bool(self.entitlements.get(entitlement))

    @classmethod
    def admin(cls, username: str = "admin") -> "AuthContext":
        """Every entitlement on the root realm."""
        return cls(username, {name: {ROOT_REALM} for name in Entitlement.all()})

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "AuthContext":
        """Build from JWT claims.

        ``entitlements`` may be a mapping (entitlement -> realms) or a plain
        list, in which case every entitlement applies to the root realm.
        """
        username = claims.get("preferred_username") or claims.get("sub") or "anonymous"
        raw = claims.get("entitlements") or {}
        if isinstance(raw, dict):
            entitlements = {name: set(realms if isinstance(realms, list) else [realms])
                            for name, realms in raw.items()}
        else:
            entitlements = {name: {ROOT_REALM} for name in raw}
        return cls(username, entitlements)


def get_effective_realms(auth_realms: Iterable[str], realm: str) -> Set[str]:
    """Authorized realms relevant to ``realm``: those containing it or below it."""
    return {r for r in auth_realms if is_in_realm(realm, r) or is_in_realm(r, realm)}


def security_checks(effective_realms: Iterable[str], kind: AnyKind, key: Optional[str], realm: str) -> None:
    """Fail unless ``realm`` lies under one of ``effective_realms``.

    Raises:
        DelegatedAdministrationError: ``realm`` is outside the caller's scope
    """
    if not any(is_in_realm(realm, scope) for scope in effective_realms):
        raise DelegatedAdministrationError(realm, AnyKind(kind).value, key)


def requires_entitlement(entitlement: str) -> Callable:
    """Require ``entitlement`` from the ``auth`` argument of a logic method.

    ``entitlement`` may contain ``{kind}``, replaced by the value of the
    logic's ``kind`` attribute (``"{kind}_CREATE"`` -> ``USER_CREATE``).

    Raises:
        UnauthorizedError: The caller does not hold the entitlement anywhere
    """
    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(self, auth: AuthContext, *args, **kwargs):
            kind = getattr(self, "kind", None)
            name = entitlement.format(kind=AnyKind(kind).value) if kind is not None else entitlement
            if auth is None or not auth.has(name):
                who = auth.username if auth else "anonymous"
                logger.warning(f"{who} lacks {name} for {fn.__name__}")
                raise UnauthorizedError(f"Missing entitlement {name}", [name])
            return fn(self, auth, *args, **kwargs)

        wrapper.entitlement = entitlement
        return wrapper
    return decorator
