"""Templates filling the blanks of entities created by pull.

A template is declared with the same camelCase keys used on the wire; string
values may reference fields and first plain attribute values of the entity
being completed::

    {"realm": "/employees",
     "plainAttrs": {"email": ["{username}@example.com"]},
     "resources": ["ldap"]}

Only empty fields and attributes are filled; resources, memberships, roles
and aux classes are merged.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .model import AnyKind, AnyTO, UserTO


class _Blank(dict):
    def __missing__(self, key):
        return ""


_SCALARS = {
    "realm": "realm",
    "status": "status",
    "username": "username",
    "name": "name",
    "userOwner": "user_owner",
    "groupOwner": "group_owner",
    "securityQuestion": "security_question",
    "udynMembershipCond": "udyn_membership_cond",
}

_LISTS = {
    "auxClasses": "aux_classes",
    "memberships": "memberships",
    "roles": "roles",
    "typeExtensions": "type_extensions",
}


@dataclass
class AnyTemplate:
    kind: AnyKind
    data: Dict[str, Any] = field(default_factory=dict)

    def _context(self, to: AnyTO) -> Dict[str, str]:
        context = _Blank({k: v[0] for k, v in to.plain_attrs.items() if v})
        for wire_name, attr_name in _SCALARS.items():
            value = getattr(to, attr_name, None)
            if value:
                context[wire_name] = value
        context["key"] = to.key or ""
        return context

    @staticmethod
    def _render(value: Any, context: Dict[str, str]) -> Any:
        if isinstance(value, str):
            return value.format_map(context)
        return value

    def apply(self, to: AnyTO) -> AnyTO:
        """Complete ``to`` in place and return it."""
        if to.kind != AnyKind(self.kind):
            return to
        context = self._context(to)

        for wire_name, attr_name in _SCALARS.items():
            if wire_name in self.data and hasattr(to, attr_name) and not getattr(to, attr_name):
                setattr(to, attr_name, self._render(self.data[wire_name], context))
        if isinstance(to, UserTO) and "mustChangePassword" in self.data and not to.must_change_password:
            to.must_change_password = bool(self.data["mustChangePassword"])

        for wire_name, attr_name in (("plainAttrs", "plain_attrs"), ("virAttrs", "vir_attrs")):
            target = getattr(to, attr_name)
            for schema, values in (self.data.get(wire_name) or {}).items():
                if not [v for v in target.get(schema, []) if v not in (None, "")]:
                    rendered = [self._render(v, context) for v in _as_list(values)]
                    target[schema] = [v for v in rendered if v != ""]

        for wire_name, attr_name in _LISTS.items():
            if wire_name in self.data and hasattr(to, attr_name):
                current = getattr(to, attr_name)
                for value in _as_list(self.data[wire_name]):
                    if value not in current:
                        current.append(value)

        to.resources |= set(_as_list(self.data.get("resources") or []))
        return to


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple, set)) else [value]
