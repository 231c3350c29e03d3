"""Diff / patch engine.

``diff`` computes the minimal patch turning ``original`` into ``updated``;
``apply_patch`` applies a patch to a TO and returns a new TO.

In incremental mode (used by pull) nothing is ever removed because it is
missing from ``updated``: a connector object only carries the mapped subset
of an entity.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from .errors import ClientError
from .model import AnyKind, AnyTO, Attr, GroupTO, UserTO
from .patch import (
    AnyPatch,
    AttrPatch,
    MembershipPatch,
    PasswordPatch,
    PatchOperation,
    ReplacePatchItem,
    StringPatchItem,
    new_patch,
)


def _replace_item(updated: Any, original: Any) -> Optional[ReplacePatchItem]:
    if updated == original:
        return None
    return ReplacePatchItem(updated)


def _string_items(updated: List[str], original: List[str], incremental: bool) -> List[StringPatchItem]:
    items = []
    if not incremental:
        items.extend(
            StringPatchItem(value, PatchOperation.DELETE) for value in original if value not in updated
        )
    items.extend(StringPatchItem(value) for value in updated if value not in original)
    return items


def _attr_items(
    updated: Dict[str, List[str]],
    original: Dict[str, List[str]],
    incremental: bool,
) -> List[AttrPatch]:
    items = []
    if not incremental:
        for schema in original:
            if schema not in updated:
                items.append(AttrPatch(Attr(schema), PatchOperation.DELETE))

    for schema, values in updated.items():
        attr = Attr(schema, list(values))
        if attr.is_empty():
            if not incremental and schema in original:
                items.append(AttrPatch(Attr(schema), PatchOperation.DELETE))
        elif schema not in original or list(original[schema]) != list(values):
            items.append(AttrPatch(attr))
    return items


def diff(updated: AnyTO, original: AnyTO, incremental: bool = False) -> AnyPatch:
    """Compute the patch that turns ``original`` into ``updated``.

    Args:
        updated: Desired state
        original: Current state
        incremental: Only emit additions / replacements, never removals

    Returns:
        Patch keyed on the original entity
    """
    if updated.kind != original.kind:
        raise ClientError(f"Cannot diff {updated.kind.value} against {original.kind.value}")
    if updated.key and original.key and updated.key != original.key:
        raise ClientError(f"Key mismatch: {updated.key} != {original.key}")

    patch = new_patch(original.kind, original.key)

    if updated.realm:
        patch.realm = _replace_item(updated.realm, original.realm)
    patch.aux_classes = _string_items(updated.aux_classes, original.aux_classes, incremental)
    patch.plain_attrs = _attr_items(updated.plain_attrs, original.plain_attrs, incremental)
    patch.vir_attrs = _attr_items(updated.vir_attrs, original.vir_attrs, incremental)
    patch.resources = _string_items(sorted(updated.resources), sorted(original.resources), incremental)

    if original.kind == AnyKind.USER:
        _diff_user(updated, original, patch, incremental)
    elif original.kind == AnyKind.GROUP:
        _diff_group(updated, original, patch)
    else:
        if updated.name:
            patch.name = _replace_item(updated.name, original.name)
        patch.memberships = _membership_items(updated.memberships, original.memberships, incremental)

    return patch


def _membership_items(updated: List[str], original: List[str], incremental: bool) -> List[MembershipPatch]:
    items = [MembershipPatch(group) for group in updated if group not in original]
    if not incremental:
        items.extend(MembershipPatch(group, PatchOperation.DELETE) for group in original if group not in updated)
    return items


def _diff_user(updated: UserTO, original: UserTO, patch, incremental: bool) -> None:
    if updated.password and updated.password != original.password:
        patch.password = PasswordPatch(value=updated.password, resources=sorted(updated.resources))

    if updated.username:
        patch.username = _replace_item(updated.username, original.username)

    if updated.security_question is not None and (
        updated.security_question != original.security_question or updated.security_answer
    ):
        patch.security_question = ReplacePatchItem(updated.security_question)
        patch.security_answer = ReplacePatchItem(updated.security_answer)

    patch.must_change_password = _replace_item(updated.must_change_password, original.must_change_password)
    patch.roles = _string_items(updated.roles, original.roles, incremental)
    patch.memberships = _membership_items(updated.memberships, original.memberships, incremental)


def _diff_group(updated: GroupTO, original: GroupTO, patch) -> None:
    if updated.name:
        patch.name = _replace_item(updated.name, original.name)
    patch.user_owner = _replace_item(updated.user_owner, original.user_owner)
    patch.group_owner = _replace_item(updated.group_owner, original.group_owner)
    patch.udyn_membership_cond = _replace_item(updated.udyn_membership_cond, original.udyn_membership_cond)
    patch.adyn_membership_conds = _replace_item(
        dict(updated.adyn_membership_conds), dict(original.adyn_membership_conds))
    patch.type_extensions = _replace_item(list(updated.type_extensions), list(original.type_extensions))


def clean_empty_attrs(patch: AnyPatch) -> AnyPatch:
    """Drop attribute operations that would only write null or empty values."""
    for name in ("plain_attrs", "vir_attrs"):
        cleaned = []
        for item in getattr(patch, name):
            if item.operation == PatchOperation.ADD_REPLACE:
                values = [v for v in item.attr.values if v not in (None, "")]
                if not values:
                    continue
                item = AttrPatch(Attr(item.attr.schema, values), item.operation)
            cleaned.append(item)
        setattr(patch, name, cleaned)
    return patch


def _apply_strings(target: List[str], items: List[StringPatchItem]) -> List[str]:
    result = list(target)
    for item in items:
        if item.operation == PatchOperation.DELETE:
            result = [v for v in result if v != item.value]
        elif item.value not in result:
            result.append(item.value)
    return result


def _apply_attrs(target: Dict[str, List[str]], items: List[AttrPatch]) -> Dict[str, List[str]]:
    result = {k: list(v) for k, v in target.items()}
    for item in items:
        if item.operation == PatchOperation.DELETE:
            result.pop(item.attr.schema, None)
        else:
            result[item.attr.schema] = list(item.attr.values)
    return result


def apply_patch(to: AnyTO, patch: AnyPatch) -> AnyTO:
    """Return a copy of ``to`` with ``patch`` applied.

    The clear-text password of a password patch is copied onto the returned
    user TO so that callers can encode and propagate it.
    """
    if to.kind != patch.kind:
        raise ClientError(f"Cannot apply {patch.kind.value} patch to {to.kind.value}")

    result = to.copy()
    if patch.realm is not None:
        result.realm = patch.realm.value
    result.aux_classes = _apply_strings(result.aux_classes, patch.aux_classes)
    result.plain_attrs = _apply_attrs(result.plain_attrs, patch.plain_attrs)
    result.vir_attrs = _apply_attrs(result.vir_attrs, patch.vir_attrs)
    result.resources = set(_apply_strings(sorted(result.resources), patch.resources))

    for name in ("username", "security_question", "security_answer", "must_change_password",
                 "name", "user_owner", "group_owner", "udyn_membership_cond",
                 "adyn_membership_conds", "type_extensions"):
        item = getattr(patch, name, None)
        if item is not None:
            setattr(result, name, item.value)

    if getattr(patch, "memberships", None):
        memberships = list(result.memberships)
        for item in patch.memberships:
            if item.operation == PatchOperation.DELETE:
                memberships = [g for g in memberships if g != item.group]
            elif item.group not in memberships:
                memberships.append(item.group)
        result.memberships = memberships

    if getattr(patch, "roles", None):
        result.roles = _apply_strings(result.roles, patch.roles)

    if getattr(patch, "password", None) is not None and patch.password.on_storage:
        result.password = patch.password.value

    return result
