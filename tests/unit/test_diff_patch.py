"""Unit tests for the diff engine and patch wire shape."""
import pytest

from idmsync.core.diff import apply_patch, clean_empty_attrs, diff
from idmsync.core.errors import ClientError
from idmsync.core.model import Attr, GroupTO, UserTO, any_from_dict
from idmsync.core.patch import (
    AttrPatch,
    PatchOperation,
    StringPatchItem,
    UserPatch,
    patch_from_dict,
)


def _user(**overrides):
    base = dict(
        key="u1",
        realm="/employees",
        username="jdoe",
        plain_attrs={"email": ["jdoe@example.com"], "firstname": ["John"]},
        resources={"ldap"},
        memberships=["g1"],
    )
    base.update(overrides)
    return UserTO(**base)


def test_diff_then_apply_reaches_updated_state():
    original = _user()
    updated = _user(
        plain_attrs={"email": ["john.doe@example.com"], "surname": ["Doe"]},
        resources={"crm"},
        memberships=["g2"],
        must_change_password=True,
    )

    result = apply_patch(original, diff(updated, original))

    assert result.plain_attrs == updated.plain_attrs
    assert result.resources == {"crm"}
    assert result.memberships == ["g2"]
    assert result.must_change_password is True


def test_diff_of_converged_entities_is_empty():
    original = _user()
    assert diff(original.copy(), original).is_empty()


def test_incremental_diff_never_removes():
    original = _user()
    updated = _user(plain_attrs={"email": ["new@example.com"]}, resources=set(), memberships=[])

    patch = diff(updated, original, incremental=True)

    assert [p.attr.schema for p in patch.plain_attrs] == ["email"]
    assert all(item.operation == PatchOperation.ADD_REPLACE for item in patch.plain_attrs)
    assert patch.resources == []
    assert patch.memberships == []


def test_full_diff_deletes_missing_attributes():
    original = _user()
    updated = _user(plain_attrs={"email": ["jdoe@example.com"]})

    patch = diff(updated, original)

    deleted = [p.attr.schema for p in patch.plain_attrs if p.operation == PatchOperation.DELETE]
    assert deleted == ["firstname"]


def test_password_change_goes_into_password_patch():
    original = _user()
    updated = _user(password="N3wPassword!")

    patch = diff(updated, original)

    assert patch.password.value == "N3wPassword!"
    assert patch.password.resources == ["ldap"]
    assert apply_patch(original, patch).password == "N3wPassword!"


def test_diff_rejects_kind_mismatch():
    with pytest.raises(ClientError):
        diff(GroupTO(key="g1", name="staff"), _user())


def test_diff_rejects_key_mismatch():
    with pytest.raises(ClientError):
        diff(_user(key="other"), _user())


def test_apply_patch_does_not_touch_original():
    original = _user()
    patch = UserPatch(key="u1", resources=[StringPatchItem("crm")])

    result = apply_patch(original, patch)

    assert result.resources == {"ldap", "crm"}
    assert original.resources == {"ldap"}


def test_clean_empty_attrs_drops_blank_writes():
    patch = UserPatch(key="u1", plain_attrs=[
        AttrPatch(Attr("email", ["", None])),
        AttrPatch(Attr("firstname", ["John", ""])),
        AttrPatch(Attr("surname"), PatchOperation.DELETE),
    ])

    cleaned = clean_empty_attrs(patch)

    assert [(p.attr.schema, p.attr.values) for p in cleaned.plain_attrs] == [
        ("firstname", ["John"]),
        ("surname", []),
    ]


def test_attr_equality_ignores_order_and_duplicates():
    assert Attr("mail", ["a", "b", "a"]) == Attr("mail", ["b", "a"])
    assert Attr("mail", ["a"]) != Attr("cn", ["a"])


def test_patch_from_wire_shape():
    patch = patch_from_dict({
        "key": "u1",
        "username": {"value": "john"},
        "plainAttrs": [{"operation": "ADD_REPLACE", "attr": {"schema": "email", "values": ["j@example.com"]}}],
        "resources": [{"operation": "DELETE", "value": "ldap"}],
        "password": {"value": "S3cret!", "onStorage": False, "resources": ["crm"]},
    })

    assert isinstance(patch, UserPatch)
    assert patch.username.value == "john"
    assert patch.resources[0].operation == PatchOperation.DELETE
    assert patch.password.on_storage is False

    wire = patch.to_dict()
    assert wire["kind"] == "USER"
    assert "value" not in wire["password"]


def test_user_to_dict_never_exposes_password():
    payload = _user(password="secret", security_answer="blue").to_dict()

    assert "password" not in payload
    assert "securityAnswer" not in payload
    assert any_from_dict(payload).username == "jdoe"
