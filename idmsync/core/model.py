"""Transfer objects for Users, Groups and AnyObjects.

The three entity kinds form a tagged variant: each concrete TO carries its
``kind`` and shares the same attribute-bag structure (key, realm, status,
plain/derived/virtual attributes and resource assignments).

Usage:
    user = UserTO(username="jdoe", realm="/", plain_attrs={"email": ["jdoe@example.com"]})
    payload = user.to_dict()
    same = any_from_dict(payload)
"""
from __future__ import annotations
import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Set, Union


class AnyKind(str, Enum):
    USER = "USER"
    GROUP = "GROUP"
    ANY_OBJECT = "ANY_OBJECT"


class ResourceOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NONE = "NONE"


@dataclass(eq=False)
class Attr:
    """Schema name plus ordered values.

    Equality ignores value order and duplicates; the list keeps the order
    in which values were received.
    """
    schema: str
    values: List[str] = field(default_factory=list)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Attr):
            return NotImplemented
        return self.schema == other.schema and set(self.values) == set(other.values)

    def __hash__(self) -> int:
        return hash((self.schema, frozenset(self.values)))

    def is_empty(self) -> bool:
        return not any(value not in (None, "") for value in self.values)

    def to_dict(self) -> dict:
        return {"schema": self.schema, "values": list(self.values)}

    @classmethod
    def from_dict(cls, data: dict) -> "Attr":
        return cls(schema=data["schema"], values=list(data.get("values") or []))


def _date_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str_to_date(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class _AnyBase:
    key: Optional[str] = None
    type: Optional[str] = None
    realm: Optional[str] = None
    status: Optional[str] = None
    aux_classes: List[str] = field(default_factory=list)
    plain_attrs: Dict[str, List[str]] = field(default_factory=dict)
    der_attrs: Dict[str, List[str]] = field(default_factory=dict)
    vir_attrs: Dict[str, List[str]] = field(default_factory=dict)
    resources: Set[str] = field(default_factory=set)
    creation_date: Optional[datetime] = None
    last_change_date: Optional[datetime] = None

    kind: ClassVar[AnyKind]

    def copy(self):
        return copy.deepcopy(self)

    @property
    def display_name(self) -> Optional[str]:
        return getattr(self, "username", None) or getattr(self, "name", None)

    def _base_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "type": self.type,
            "realm": self.realm,
            "status": self.status,
            "auxClasses": list(self.aux_classes),
            "plainAttrs": [Attr(k, list(v)).to_dict() for k, v in sorted(self.plain_attrs.items())],
            "derAttrs": [Attr(k, list(v)).to_dict() for k, v in sorted(self.der_attrs.items())],
            "virAttrs": [Attr(k, list(v)).to_dict() for k, v in sorted(self.vir_attrs.items())],
            "resources": sorted(self.resources),
            "creationDate": _date_to_str(self.creation_date),
            "lastChangeDate": _date_to_str(self.last_change_date),
        }

    @staticmethod
    def _base_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
        def attrs(name: str) -> Dict[str, List[str]]:
            raw = data.get(name) or []
            if isinstance(raw, dict):
                return {k: list(v) for k, v in raw.items()}
            return {a["schema"]: list(a.get("values") or []) for a in raw}

        return {
            "key": data.get("key"),
            "type": data.get("type"),
            "realm": data.get("realm"),
            "status": data.get("status"),
            "aux_classes": list(data.get("auxClasses") or []),
            "plain_attrs": attrs("plainAttrs"),
            "der_attrs": attrs("derAttrs"),
            "vir_attrs": attrs("virAttrs"),
            "resources": set(data.get("resources") or []),
            "creation_date": _str_to_date(data.get("creationDate")),
            "last_change_date": _str_to_date(data.get("lastChangeDate")),
        }


@dataclass
class UserTO(_AnyBase):
    username: Optional[str] = None
    password: Optional[str] = None
    security_question: Optional[str] = None
    security_answer: Optional[str] = None
    must_change_password: bool = False
    suspended: bool = False
    memberships: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)

    kind: ClassVar[AnyKind] = AnyKind.USER

    def __post_init__(self):
        if self.type is None:
            self.type = AnyKind.USER.value

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "username": self.username,
            "securityQuestion": self.security_question,
            "mustChangePassword": self.must_change_password,
            "suspended": self.suspended,
            "memberships": list(self.memberships),
            "roles": list(self.roles),
        })
        # Password and security answer never leave the service
        return data


@dataclass
class GroupTO(_AnyBase):
    name: Optional[str] = None
    user_owner: Optional[str] = None
    group_owner: Optional[str] = None
    udyn_membership_cond: Optional[str] = None
    adyn_membership_conds: Dict[str, str] = field(default_factory=dict)
    type_extensions: List[str] = field(default_factory=list)

    kind: ClassVar[AnyKind] = AnyKind.GROUP

    def __post_init__(self):
        if self.type is None:
            self.type = AnyKind.GROUP.value

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "name": self.name,
            "userOwner": self.user_owner,
            "groupOwner": self.group_owner,
            "udynMembershipCond": self.udyn_membership_cond,
            "adynMembershipConds": dict(self.adyn_membership_conds),
            "typeExtensions": list(self.type_extensions),
        })
        return data


@dataclass
class AnyObjectTO(_AnyBase):
    name: Optional[str] = None
    memberships: List[str] = field(default_factory=list)

    kind: ClassVar[AnyKind] = AnyKind.ANY_OBJECT

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({"name": self.name, "memberships": list(self.memberships)})
        return data


AnyTO = Union[UserTO, GroupTO, AnyObjectTO]

TO_CLASSES = {
    AnyKind.USER: UserTO,
    AnyKind.GROUP: GroupTO,
    AnyKind.ANY_OBJECT: AnyObjectTO,
}


def new_any_to(kind: AnyKind) -> AnyTO:
    return TO_CLASSES[AnyKind(kind)]()


def any_from_dict(data: Dict[str, Any], kind: Optional[AnyKind] = None) -> AnyTO:
    """Build a TO from its JSON representation.

    Args:
        data: Dict as produced by ``to_dict()`` (camelCase keys)
        kind: Kind to use when the payload does not carry one

    Returns:
        UserTO, GroupTO or AnyObjectTO
    """
    kind = AnyKind(data.get("kind") or kind or AnyKind.USER)
    kwargs = _AnyBase._base_kwargs(data)

    if kind == AnyKind.USER:
        return UserTO(
            username=data.get("username"),
            password=data.get("password"),
            security_question=data.get("securityQuestion"),
            security_answer=data.get("securityAnswer"),
            must_change_password=bool(data.get("mustChangePassword", False)),
            suspended=bool(data.get("suspended", False)),
            memberships=list(data.get("memberships") or []),
            roles=list(data.get("roles") or []),
            **kwargs,
        )
    if kind == AnyKind.GROUP:
        return GroupTO(
            name=data.get("name"),
            user_owner=data.get("userOwner"),
            group_owner=data.get("groupOwner"),
            udyn_membership_cond=data.get("udynMembershipCond"),
            adyn_membership_conds=dict(data.get("adynMembershipConds") or {}),
            type_extensions=list(data.get("typeExtensions") or []),
            **kwargs,
        )
    return AnyObjectTO(
        name=data.get("name"),
        memberships=list(data.get("memberships") or []),
        **kwargs,
    )


@dataclass
class ConnObjectTO:
    """Connector-agnostic rendering of a remote object."""
    fiql: Optional[str] = None
    attrs: List[Attr] = field(default_factory=list)

    def attr(self, schema: str) -> Optional[Attr]:
        return next((a for a in self.attrs if a.schema == schema), None)

    def to_dict(self) -> dict:
        return {"fiql": self.fiql, "attrs": [a.to_dict() for a in self.attrs]}


def etag_of(to: AnyTO) -> Optional[str]:
    """ETag value for a TO: last change (or creation) date in epoch millis."""
    date = to.last_change_date or to.creation_date
    if date is None:
        return None
    return str(int(date.timestamp() * 1000))
