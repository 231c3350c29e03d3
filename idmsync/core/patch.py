"""Patches: operation-tagged descriptions of a requested mutation.

Every collection-valued field carries its own list of ``ADD_REPLACE`` /
``DELETE`` items; scalar fields are replaced as a whole through a
:class:`ReplacePatchItem`. Wire shape::

    {"key": "...", "username": {"value": "jdoe"},
     "plainAttrs": [{"operation": "ADD_REPLACE", "attr": {"schema": "email", "values": [...]}}],
     "resources": [{"operation": "DELETE", "value": "ldap"}]}
"""
from __future__ import annotations
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from .model import AnyKind, Attr


class PatchOperation(str, Enum):
    ADD_REPLACE = "ADD_REPLACE"
    DELETE = "DELETE"


@dataclass
class StringPatchItem:
    value: str
    operation: PatchOperation = PatchOperation.ADD_REPLACE

    def to_dict(self) -> dict:
        return {"operation": self.operation.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "StringPatchItem":
        return cls(value=data["value"], operation=PatchOperation(data.get("operation", "ADD_REPLACE")))


@dataclass
class ReplacePatchItem:
    """Full replacement of a scalar field (``None`` value clears it)."""
    value: Any = None

    def to_dict(self) -> dict:
        return {"value": self.value}


@dataclass
class AttrPatch:
    attr: Attr
    operation: PatchOperation = PatchOperation.ADD_REPLACE

    def is_empty(self) -> bool:
        return self.operation == PatchOperation.ADD_REPLACE and self.attr.is_empty()

    def to_dict(self) -> dict:
        return {"operation": self.operation.value, "attr": self.attr.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "AttrPatch":
        return cls(attr=Attr.from_dict(data["attr"]), operation=PatchOperation(data.get("operation", "ADD_REPLACE")))


@dataclass
class MembershipPatch:
    group: str
    operation: PatchOperation = PatchOperation.ADD_REPLACE

    def to_dict(self) -> dict:
        return {"operation": self.operation.value, "group": self.group}

    @classmethod
    def from_dict(cls, data: dict) -> "MembershipPatch":
        return cls(group=data["group"], operation=PatchOperation(data.get("operation", "ADD_REPLACE")))


@dataclass
class PasswordPatch:
    value: Optional[str] = None
    on_storage: bool = True
    resources: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        # Clear-text value is never serialized
        return {"onStorage": self.on_storage, "resources": list(self.resources)}


# Field name -> (wire name, item class) for list-valued patch fields
_LIST_FIELDS = {
    "aux_classes": ("auxClasses", StringPatchItem),
    "plain_attrs": ("plainAttrs", AttrPatch),
    "vir_attrs": ("virAttrs", AttrPatch),
    "resources": ("resources", StringPatchItem),
    "memberships": ("memberships", MembershipPatch),
    "roles": ("roles", StringPatchItem),
}

_SCALAR_WIRE_NAMES = {
    "realm": "realm",
    "username": "username",
    "security_question": "securityQuestion",
    "security_answer": "securityAnswer",
    "must_change_password": "mustChangePassword",
    "name": "name",
    "user_owner": "userOwner",
    "group_owner": "groupOwner",
    "udyn_membership_cond": "udynMembershipCond",
    "adyn_membership_conds": "adynMembershipConds",
    "type_extensions": "typeExtensions",
}


@dataclass
class _AnyPatchBase:
    key: Optional[str] = None
    realm: Optional[ReplacePatchItem] = None
    aux_classes: List[StringPatchItem] = field(default_factory=list)
    plain_attrs: List[AttrPatch] = field(default_factory=list)
    vir_attrs: List[AttrPatch] = field(default_factory=list)
    resources: List[StringPatchItem] = field(default_factory=list)

    kind: ClassVar[AnyKind]

    def is_empty(self) -> bool:
        """True when the patch carries no operation at all."""
        for f in fields(self):
            if f.name == "key":
                continue
            value = getattr(self, f.name)
            if isinstance(value, list):
                if value:
                    return False
            elif value is not None:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "key": self.key}
        for f in fields(self):
            if f.name == "key":
                continue
            value = getattr(self, f.name)
            if f.name in _LIST_FIELDS:
                if value:
                    data[_LIST_FIELDS[f.name][0]] = [item.to_dict() for item in value]
            elif f.name == "password":
                if value is not None:
                    data["password"] = value.to_dict()
            elif value is not None:
                data[_SCALAR_WIRE_NAMES[f.name]] = value.to_dict()
        return data


@dataclass
class UserPatch(_AnyPatchBase):
    username: Optional[ReplacePatchItem] = None
    password: Optional[PasswordPatch] = None
    security_question: Optional[ReplacePatchItem] = None
    security_answer: Optional[ReplacePatchItem] = None
    must_change_password: Optional[ReplacePatchItem] = None
    memberships: List[MembershipPatch] = field(default_factory=list)
    roles: List[StringPatchItem] = field(default_factory=list)

    kind: ClassVar[AnyKind] = AnyKind.USER


@dataclass
class GroupPatch(_AnyPatchBase):
    name: Optional[ReplacePatchItem] = None
    user_owner: Optional[ReplacePatchItem] = None
    group_owner: Optional[ReplacePatchItem] = None
    udyn_membership_cond: Optional[ReplacePatchItem] = None
    adyn_membership_conds: Optional[ReplacePatchItem] = None
    type_extensions: Optional[ReplacePatchItem] = None

    kind: ClassVar[AnyKind] = AnyKind.GROUP


@dataclass
class AnyObjectPatch(_AnyPatchBase):
    name: Optional[ReplacePatchItem] = None
    memberships: List[MembershipPatch] = field(default_factory=list)

    kind: ClassVar[AnyKind] = AnyKind.ANY_OBJECT


AnyPatch = Union[UserPatch, GroupPatch, AnyObjectPatch]

PATCH_CLASSES = {
    AnyKind.USER: UserPatch,
    AnyKind.GROUP: GroupPatch,
    AnyKind.ANY_OBJECT: AnyObjectPatch,
}


def new_patch(kind: AnyKind, key: Optional[str] = None) -> AnyPatch:
    return PATCH_CLASSES[AnyKind(kind)](key=key)


def patch_from_dict(data: Dict[str, Any], kind: Optional[AnyKind] = None) -> AnyPatch:
    """Build a patch from its wire shape.

    Args:
        data: Patch dict (see module docstring)
        kind: Kind to use when the payload does not carry one

    Returns:
        UserPatch, GroupPatch or AnyObjectPatch
    """
    kind = AnyKind(data.get("kind") or kind or AnyKind.USER)
    patch = new_patch(kind, data.get("key"))

    for f in fields(patch):
        if f.name == "key":
            continue
        if f.name in _LIST_FIELDS:
            wire_name, item_cls = _LIST_FIELDS[f.name]
            setattr(patch, f.name, [item_cls.from_dict(item) for item in data.get(wire_name) or []])
        elif f.name == "password":
            raw = data.get("password")
            if raw is not None:
                patch.password = PasswordPatch(
                    value=raw.get("value"),
                    on_storage=raw.get("onStorage", True),
                    resources=list(raw.get("resources") or []),
                )
        else:
            raw = data.get(_SCALAR_WIRE_NAMES[f.name])
            if raw is not None:
                setattr(patch, f.name, ReplacePatchItem(raw.get("value")))
    return patch
