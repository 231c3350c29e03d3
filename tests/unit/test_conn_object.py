"""Unit tests for connector object <-> TO conversion."""
import pytest

from idmsync.connectors.base import PASSWORD, ConnectorObject, GuardedString
from idmsync.core.encryptor import CipherAlgorithm
from idmsync.core.errors import MappingError
from idmsync.core.model import GroupTO, UserTO


@pytest.fixture
def pull_task(registry):
    return registry.pull_tasks["hr-pull"]


@pytest.fixture
def user_provision(registry):
    return registry.resources["hr"].get_provision("USER")


def test_build_candidate_from_remote_object(services, pull_task, user_provision):
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", mail="jdoe@example.com")

    to = services.conn_object_utils.build_from_connector_object(obj, pull_task, user_provision)

    assert isinstance(to, UserTO)
    assert to.key is None
    assert to.username == "jdoe"
    assert to.plain_attrs == {"email": ["jdoe@example.com"]}
    assert to.realm == "/employees"
    # Template of the task
    assert to.resources == {"ldap"}


def test_random_password_follows_realm_policy(services, pull_task, user_provision):
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe")

    to = services.conn_object_utils.build_from_connector_object(obj, pull_task, user_provision)

    assert to.password
    assert services.registry.password_policies["strong"].validate(to.password) == []


def test_remote_password_is_revealed(services, pull_task, user_provision):
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", **{PASSWORD: GuardedString("Remote-Pw1")})

    to = services.conn_object_utils.build_from_connector_object(obj, pull_task, user_provision)

    assert to.password == "Remote-Pw1"


def test_missing_key_value_is_a_mapping_error(services, pull_task, user_provision):
    obj = ConnectorObject.build("__ACCOUNT__", "x1", mail="nobody@example.com")

    with pytest.raises(MappingError):
        services.conn_object_utils.build_from_connector_object(obj, pull_task, user_provision)


def test_diff_keeps_unmapped_fields(services, pull_task, user_provision):
    original = services.any_store.save(UserTO(
        username="jdoe", realm="/employees/it", security_question="pet",
        plain_attrs={"email": ["old@example.com"], "department": ["R&D"]}, resources={"ldap"}))
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", mail="jdoe@example.com")

    patch = services.conn_object_utils.diff_from_connector_object(
        original.key, obj, original, pull_task, user_provision)

    assert patch.realm is None
    assert patch.security_question is None
    assert [(p.attr.schema, p.attr.values) for p in patch.plain_attrs] == [("email", ["jdoe@example.com"])]
    assert patch.resources == []


def test_diff_is_empty_when_converged(services, pull_task, user_provision):
    original = services.any_store.save(UserTO(
        username="jdoe", realm="/employees", plain_attrs={"email": ["jdoe@example.com"]}, resources={"ldap"}))
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", mail="jdoe@example.com")

    patch = services.conn_object_utils.diff_from_connector_object(
        original.key, obj, original, pull_task, user_provision)

    assert patch.is_empty()


def test_unchanged_password_is_dropped(services, pull_task, user_provision):
    original = services.any_store.save(UserTO(username="jdoe", realm="/employees", resources={"ldap"}))
    encoded = services.encryptor.encode("Same-Pw-123", CipherAlgorithm.SSHA256)
    services.any_store.set_password(original.key, encoded, CipherAlgorithm.SSHA256.value)
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", **{PASSWORD: "Same-Pw-123"})

    patch = services.conn_object_utils.diff_from_connector_object(
        original.key, obj, original, pull_task, user_provision)

    assert patch.password is None


def test_group_diff_preserves_ownership(services, pull_task, registry):
    provision = registry.resources["hr"].get_provision("GROUP")
    original = services.any_store.save(GroupTO(name="staff", realm="/employees", user_owner="u1"))
    obj = ConnectorObject.build("__GROUP__", "staff", cn="staff")

    patch = services.conn_object_utils.diff_from_connector_object(
        original.key, obj, original, pull_task, provision)

    assert patch.user_owner is None
    assert patch.is_empty()


def test_conn_object_to_hides_password(services, user_provision):
    obj = ConnectorObject.build("__ACCOUNT__", "jdoe", uid="jdoe", **{PASSWORD: GuardedString("x")})

    to = services.conn_object_utils.conn_object_to(obj, user_provision)

    assert to.fiql == "uid==jdoe"
    assert to.attr(PASSWORD) is None
    assert to.attr("uid").values == ["jdoe"]
