"""Resource mappings and the schema registry behind them.

A :class:`Provision` declares, for one (resource, any type) pair, which
external attribute corresponds to which internal attribute. Internal names
are resolved once, when the configuration is loaded, into typed accessors
(field, plain, derived, virtual) by :class:`SchemaRegistry`; an unknown name
fails there instead of on the first record that uses it.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..connectors.base import ENABLE, NAME, PASSWORD, UID, Attribute, ConnInstance, GuardedString
from .errors import MappingError
from .model import AnyKind, AnyTO
from .password import PasswordPolicy

logger = logging.getLogger(__name__)


class MappingPurpose(str, Enum):
    PULL = "PULL"
    PROPAGATION = "PROPAGATION"
    BOTH = "BOTH"
    NONE = "NONE"


# ─────────────────────────────────────────────────────────────────────────────
# Item transformers
# ─────────────────────────────────────────────────────────────────────────────
TRANSFORMERS: Dict[str, Callable[[str], str]] = {
    "trim": lambda value: value.strip(),
    "lower": lambda value: value.lower(),
    "upper": lambda value: value.upper(),
}


def _transform(values: Iterable[Any], transformers: Iterable[str]) -> List[Any]:
    result = []
    for value in values:
        if isinstance(value, str):
            for name in transformers:
                value = TRANSFORMERS[name](value)
        result.append(value)
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Accessors
# ─────────────────────────────────────────────────────────────────────────────
class SchemaType(str, Enum):
    FIELD = "field"
    PLAIN = "plain"
    DERIVED = "derived"
    VIRTUAL = "virtual"


class _Blank(dict):
    def __missing__(self, key):
        return ""


@dataclass(frozen=True)
class Accessor:
    """Typed read/write access to one internal attribute of a TO."""
    schema_type: SchemaType
    name: str
    attr_name: Optional[str] = None
    expression: Optional[str] = None

    def get(self, to: AnyTO) -> List[str]:
        if self.schema_type == SchemaType.FIELD:
            value = getattr(to, self.attr_name, None)
            if value is None or value == "":
                return []
            if isinstance(value, bool):
                return [str(value).lower()]
            return [str(value)]
        if self.schema_type == SchemaType.PLAIN:
            return list(to.plain_attrs.get(self.name, []))
        if self.schema_type == SchemaType.VIRTUAL:
            return list(to.vir_attrs.get(self.name, []))

        if self.name in to.der_attrs:
            return list(to.der_attrs[self.name])
        values = _Blank({k: v[0] for k, v in to.plain_attrs.items() if v})
        values.update({"key": to.key or "", "name": to.display_name or ""})
        rendered = self.expression.format_map(values).strip()
        return [rendered] if rendered else []

    def set(self, to: AnyTO, values: List[Any]) -> None:
        if self.schema_type == SchemaType.DERIVED:
            # Derived values are computed, never written
            return
        values = [v.reveal() if isinstance(v, GuardedString) else v for v in values if v is not None]

        if self.schema_type == SchemaType.FIELD:
            value = values[0] if values else None
            if self.attr_name in ("must_change_password", "suspended"):
                value = str(value).lower() == "true" if value is not None else False
            elif value is not None:
                value = str(value)
            setattr(to, self.attr_name, value)
        elif self.schema_type == SchemaType.PLAIN:
            to.plain_attrs[self.name] = [str(v) for v in values]
        else:
            to.vir_attrs[self.name] = [str(v) for v in values]


FIELDS: Dict[AnyKind, Dict[str, str]] = {
    AnyKind.USER: {
        "key": "key",
        "username": "username",
        "password": "password",
        "mustChangePassword": "must_change_password",
        "securityQuestion": "security_question",
        "securityAnswer": "security_answer",
        "status": "status",
        "suspended": "suspended",
    },
    AnyKind.GROUP: {
        "key": "key",
        "name": "name",
        "userOwner": "user_owner",
        "groupOwner": "group_owner",
    },
    AnyKind.ANY_OBJECT: {
        "key": "key",
        "name": "name",
    },
}


class SchemaRegistry:
    """Declared plain, derived and virtual schemas plus the built-in fields.

    Usage:
        registry = SchemaRegistry(plain=["email"], derived={"fullname": "{firstname} {surname}"})
        accessor = registry.resolve(AnyKind.USER, "email")
    """

    def __init__(
        self,
        plain: Iterable[str] = (),
        derived: Optional[Dict[str, str]] = None,
        virtual: Iterable[str] = (),
    ):
        self.plain = set(plain)
        self.derived = dict(derived or {})
        self.virtual = set(virtual)

    def resolve(self, kind: AnyKind, name: str) -> Accessor:
        fields_of_kind = FIELDS[AnyKind(kind)]
        if name in fields_of_kind:
            return Accessor(SchemaType.FIELD, name, attr_name=fields_of_kind[name])
        if name in self.plain:
            return Accessor(SchemaType.PLAIN, name)
        if name in self.derived:
            return Accessor(SchemaType.DERIVED, name, expression=self.derived[name])
        if name in self.virtual:
            return Accessor(SchemaType.VIRTUAL, name)
        raise MappingError(f"Unknown internal attribute '{name}' for {AnyKind(kind).value}", [name])

    def bind(self, provision: "Provision") -> "Provision":
        """Resolve every mapping item of ``provision`` and validate the mapping."""
        for item in provision.mapping.items:
            item.accessor = self.resolve(provision.kind, item.int_attr_name)
            for name in item.transformers:
                if name not in TRANSFORMERS:
                    raise MappingError(f"Unknown transformer '{name}'", [name])
        if provision.mapping.items and provision.mapping.conn_object_key_item is None:
            raise MappingError(f"No connObjectKey mapping item for {provision.any_type}", [provision.any_type])
        return provision


# ─────────────────────────────────────────────────────────────────────────────
# Mapping declarations
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class MappingItem:
    int_attr_name: str
    ext_attr_name: str
    purpose: MappingPurpose = MappingPurpose.BOTH
    conn_object_key: bool = False
    password: bool = False
    mandatory_condition: bool = False
    transformers: List[str] = field(default_factory=list)
    accessor: Optional[Accessor] = field(default=None, compare=False, repr=False)

    def is_for_pull(self) -> bool:
        return self.purpose in (MappingPurpose.PULL, MappingPurpose.BOTH)

    def is_for_propagation(self) -> bool:
        return self.purpose in (MappingPurpose.PROPAGATION, MappingPurpose.BOTH)


@dataclass
class Mapping:
    items: List[MappingItem] = field(default_factory=list)

    @property
    def conn_object_key_item(self) -> Optional[MappingItem]:
        return next((item for item in self.items if item.conn_object_key), None)


@dataclass
class Provision:
    any_type: str
    kind: AnyKind
    object_class: str
    mapping: Mapping = field(default_factory=Mapping)
    aux_classes: List[str] = field(default_factory=list)
    correlation_rule: Optional[str] = None
    correlation_conf: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalResource:
    key: str
    conn_instance: ConnInstance
    provisions: List[Provision] = field(default_factory=list)
    propagation_priority: Optional[int] = None
    priority_abort: bool = False
    random_pwd_if_not_provided: bool = False
    password_policy: Optional[PasswordPolicy] = None
    enforce_mandatory_condition: bool = True

    def get_provision(self, any_type: str) -> Optional[Provision]:
        return next((p for p in self.provisions if p.any_type == any_type), None)

    def get_provision_by_kind(self, kind: AnyKind) -> Optional[Provision]:
        return next((p for p in self.provisions if p.kind == AnyKind(kind)), None)


# ─────────────────────────────────────────────────────────────────────────────
# Mapping manager
# ─────────────────────────────────────────────────────────────────────────────
class MappingManager:
    """Moves values between TOs and connector attributes through a mapping."""

    def __init__(self, schema_registry: SchemaRegistry):
        self.schema_registry = schema_registry

    def accessor(self, item: MappingItem, kind: AnyKind) -> Accessor:
        if item.accessor is None:
            item.accessor = self.schema_registry.resolve(kind, item.int_attr_name)
        return item.accessor

    @staticmethod
    def get_pull_items(provision: Provision) -> List[MappingItem]:
        return [item for item in provision.mapping.items if item.is_for_pull()]

    @staticmethod
    def get_propagation_items(provision: Provision) -> List[MappingItem]:
        return [item for item in provision.mapping.items if item.is_for_propagation()]

    def set_int_values(self, item: MappingItem, values: List[Any], to: AnyTO, kind: AnyKind) -> None:
        """Write external ``values`` into the internal attribute of ``item``."""
        accessor = self.accessor(item, kind)
        accessor.set(to, _transform(values, item.transformers))

    def get_int_values(self, item: MappingItem, to: AnyTO, kind: AnyKind) -> List[str]:
        return _transform(self.accessor(item, kind).get(to), item.transformers)

    def get_conn_object_key_value(self, to: AnyTO, provision: Provision) -> Optional[str]:
        """Value of the connObjectKey item for ``to``; None when it cannot be computed."""
        item = provision.mapping.conn_object_key_item
        if item is None:
            return None
        values = self.get_int_values(item, to, provision.kind)
        return values[0] if values else None

    def has_must_change_password(self, provision: Optional[Provision]) -> bool:
        if provision is None:
            return False
        return any(item.int_attr_name == "mustChangePassword" for item in provision.mapping.items)

    def prepare_attrs(
        self,
        to: AnyTO,
        provision: Provision,
        password: Optional[str] = None,
        change_pwd: bool = True,
        enable: Optional[bool] = None,
        enforce_mandatory: bool = True,
    ) -> Tuple[str, List[Attribute]]:
        """Build the connector attribute set for propagating ``to``.

        Args:
            to: Entity to propagate
            provision: Provision for the entity's any type on the resource
            password: Clear-text password to send, if any
            change_pwd: Whether the password item is to be sent at all
            enable: Value of the enable special attribute, None to omit it
            enforce_mandatory: Fail when a mandatory item has no value

        Returns:
            Tuple of (connObjectKey value, attributes)

        Raises:
            MappingError: connObjectKey cannot be computed or a mandatory value is missing
        """
        conn_object_key = self.get_conn_object_key_value(to, provision)
        if not conn_object_key:
            raise MappingError(
                f"Cannot compute connObjectKey of {to.kind.value} {to.display_name or to.key}",
                [provision.any_type],
            )

        attrs: List[Attribute] = []
        missing = []
        for item in self.get_propagation_items(provision):
            if item.password or item.int_attr_name == "password":
                if change_pwd and password:
                    attrs.append(Attribute(PASSWORD, [GuardedString(password)]))
                continue

            values = self.get_int_values(item, to, provision.kind)
            if not values and item.mandatory_condition:
                missing.append(item.ext_attr_name)
                continue
            if item.conn_object_key:
                values = [conn_object_key]
            attrs.append(Attribute(item.ext_attr_name, values))

        if missing and enforce_mandatory:
            raise MappingError(f"Mandatory values missing: {', '.join(missing)}", missing)

        names = {attr.name for attr in attrs}
        if NAME not in names:
            attrs.append(Attribute(NAME, [conn_object_key]))
        if UID not in names:
            attrs.append(Attribute(UID, [conn_object_key]))
        if enable is not None:
            attrs.append(Attribute(ENABLE, [enable]))
        return conn_object_key, attrs
