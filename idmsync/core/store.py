"""In-process storage for entities, credentials, realms and remediations.

All reads hand out copies, so a caller works on a snapshot and only
``save`` makes a change visible to others.
"""
from __future__ import annotations
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import DuplicateError, InvalidRealmError, NotFoundError
from .model import AnyKind, AnyTO, GroupTO, ResourceOperation, UserTO
from .password import PasswordPolicy

logger = logging.getLogger(__name__)

ROOT_REALM = "/"


def now() -> datetime:
    # Millisecond precision, so that ETags round-trip exactly
    current = datetime.now(timezone.utc)
    return current.replace(microsecond=current.microsecond // 1000 * 1000)


class AnyStore:
    """Users, groups and any objects keyed by kind and key."""

    def __init__(self):
        self._lock = threading.RLock()
        self._entities: Dict[AnyKind, Dict[str, AnyTO]] = {kind: {} for kind in AnyKind}
        self._credentials: Dict[str, Tuple[str, Optional[str]]] = {}

    @staticmethod
    def _name_of(to: AnyTO) -> Optional[str]:
        return to.username if isinstance(to, UserTO) else to.name

    def save(self, to: AnyTO) -> AnyTO:
        """Insert or replace an entity; assigns key and dates, returns a copy."""
        with self._lock:
            entities = self._entities[to.kind]
            stored = to.copy()
            if isinstance(stored, UserTO):
                stored.password = None

            name = self._name_of(stored)
            for other in entities.values():
                if other.key != stored.key and name and self._name_of(other) == name:
                    raise DuplicateError(f"{to.kind.value} '{name}' already exists", [name])

            if stored.key is None:
                stored.key = str(uuid.uuid4())
            timestamp = now()
            if stored.key in entities:
                stored.creation_date = entities[stored.key].creation_date
            else:
                stored.creation_date = stored.creation_date or timestamp
            stored.last_change_date = timestamp

            entities[stored.key] = stored
            return stored.copy()

    def insert(self, to: AnyTO) -> AnyTO:
        """Save a new entity; an existing key is never replaced."""
        with self._lock:
            if to.key is not None and to.key in self._entities[to.kind]:
                raise DuplicateError(f"{to.kind.value} {to.key} already exists", [to.key])
            return self.save(to)

    def find(self, kind: AnyKind, key: str) -> Optional[AnyTO]:
        with self._lock:
            to = self._entities[AnyKind(kind)].get(key)
            return to.copy() if to else None

    def get(self, kind: AnyKind, key: str) -> AnyTO:
        to = self.find(kind, key)
        if to is None:
            raise NotFoundError(f"{AnyKind(kind).value} {key}", [key])
        return to

    def find_by_name(self, kind: AnyKind, name: str) -> Optional[AnyTO]:
        with self._lock:
            for to in self._entities[AnyKind(kind)].values():
                if self._name_of(to) == name:
                    return to.copy()
        return None

    def delete(self, kind: AnyKind, key: str) -> AnyTO:
        with self._lock:
            to = self._entities[AnyKind(kind)].pop(key, None)
            if to is None:
                raise NotFoundError(f"{AnyKind(kind).value} {key}", [key])
            self._credentials.pop(key, None)
            return to

    def search(
        self,
        kind: AnyKind,
        predicate: Optional[Callable[[AnyTO], bool]] = None,
        realms: Optional[Iterable[str]] = None,
    ) -> List[AnyTO]:
        """Entities of ``kind`` matching ``predicate`` under any of ``realms``, sorted by key."""
        realms = list(realms) if realms is not None else None
        with self._lock:
            candidates = [to.copy() for to in self._entities[AnyKind(kind)].values()]
        result = []
        for to in candidates:
            if realms is not None and not any(is_in_realm(to.realm, realm) for realm in realms):
                continue
            if predicate is None or predicate(to):
                result.append(to)
        return sorted(result, key=lambda to: to.key)

    def find_owned_by_group(self, group_key: str) -> List[GroupTO]:
        return self.search(AnyKind.GROUP, lambda g: g.group_owner == group_key)

    def find_members(self, group_key: str) -> List[UserTO]:
        return self.search(AnyKind.USER, lambda u: group_key in u.memberships)

    # ─────────────────────────────────────────────────────────────────────────
    # Credentials
    # ─────────────────────────────────────────────────────────────────────────
    def set_password(self, key: str, encoded: str, cipher_algorithm: Optional[str]) -> None:
        """Store an encoded password as-is, tagged with its cipher algorithm."""
        with self._lock:
            if key not in self._entities[AnyKind.USER]:
                raise NotFoundError(f"USER {key}", [key])
            self._credentials[key] = (encoded, cipher_algorithm)

    def get_password(self, key: str) -> Tuple[Optional[str], Optional[str]]:
        with self._lock:
            return self._credentials.get(key, (None, None))


def is_in_realm(realm: Optional[str], scope: str) -> bool:
    """True when ``realm`` equals ``scope`` or lies below it."""
    realm = realm or ROOT_REALM
    if scope == ROOT_REALM or realm == scope:
        return True
    return realm.startswith(scope.rstrip("/") + "/")


@dataclass
class Realm:
    full_path: str
    password_policy: Optional[PasswordPolicy] = None


class RealmStore:
    def __init__(self, realms: Iterable[Realm] = ()):
        self._realms: Dict[str, Realm] = {ROOT_REALM: Realm(ROOT_REALM)}
        for realm in realms:
            self._realms[realm.full_path] = realm

    def add(self, realm: Realm) -> None:
        self._realms[realm.full_path] = realm

    def find(self, full_path: str) -> Optional[Realm]:
        return self._realms.get(full_path)

    def get(self, full_path: str) -> Realm:
        realm = self.find(full_path)
        if realm is None:
            raise InvalidRealmError(f"Realm {full_path} not found", [full_path])
        return realm

    def ancestors(self, full_path: str) -> List[Realm]:
        """``full_path`` and its ancestors, root first."""
        paths = [ROOT_REALM]
        current = ""
        for part in [p for p in (full_path or ROOT_REALM).split("/") if p]:
            current = f"{current}/{part}"
            paths.append(current)
        return [self._realms[p] for p in paths if p in self._realms]

    def all(self) -> List[Realm]:
        return sorted(self._realms.values(), key=lambda r: r.full_path)


# ─────────────────────────────────────────────────────────────────────────────
# Remediations
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class Remediation:
    """Pending operation a pull run could not apply on its own."""
    any_type: str
    operation: ResourceOperation
    payload: Any
    error: str
    remote_name: Optional[str] = None
    pull_task: Optional[str] = None
    entity_key: Optional[str] = None
    etag: Optional[str] = None
    key: str = field(default_factory=lambda: str(uuid.uuid4()))
    instant: datetime = field(default_factory=now)

    def to_dict(self) -> dict:
        payload = self.payload
        if hasattr(payload, "to_dict"):
            payload = payload.to_dict()
        return {
            "key": self.key,
            "anyType": self.any_type,
            "operation": self.operation.value,
            "payload": payload,
            "error": self.error,
            "remoteName": self.remote_name,
            "pullTask": self.pull_task,
            "entityKey": self.entity_key,
            "instant": self.instant.isoformat(),
        }


class RemediationStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._remediations: Dict[str, Remediation] = {}

    def save(self, remediation: Remediation) -> Remediation:
        with self._lock:
            self._remediations[remediation.key] = remediation
        return remediation

    def find(self, key: str) -> Optional[Remediation]:
        with self._lock:
            return self._remediations.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            if self._remediations.pop(key, None) is None:
                raise NotFoundError(f"Remediation {key}", [key])

    def list(
        self,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> List[Remediation]:
        with self._lock:
            items = list(self._remediations.values())
        if before is not None:
            items = [r for r in items if r.instant < before]
        if after is not None:
            items = [r for r in items if r.instant > after]
        return sorted(items, key=lambda r: (r.instant, r.key))
