"""Unit tests for correlation rules."""
import pytest

from idmsync.connectors.base import ConnectorObject
from idmsync.core.correlation import CorrelationOutcome, CorrelationRule, SearchCond, correlate
from idmsync.core.errors import AmbiguousCorrelationError, MappingError
from idmsync.core.model import AnyKind, UserTO


@pytest.fixture
def provision(registry):
    return registry.resources["hr"].get_provision("USER")


def _obj(**attrs):
    return ConnectorObject.build("__ACCOUNT__", attrs.get("uid", "x"), **attrs)


def test_no_match(services, provision):
    rule = services.correlation_rules.get(provision)

    result = correlate(services.any_store, rule, _obj(uid="jdoe"), provision)

    assert result.outcome == CorrelationOutcome.NONE
    assert result.match is None


def test_single_match_on_key_item(services, provision):
    saved = services.any_store.save(UserTO(username="jdoe", realm="/employees"))
    rule = services.correlation_rules.get(provision)

    result = correlate(services.any_store, rule, _obj(uid="jdoe"), provision)

    assert result.outcome == CorrelationOutcome.ONE
    assert result.match.key == saved.key
    assert str(result.cond) == "username==jdoe"


def test_many_matches_are_never_resolved(services, provision):
    provision.correlation_rule = "attributes"
    provision.correlation_conf = {"schemas": ["email"]}
    services.any_store.save(UserTO(username="a", realm="/", plain_attrs={"email": ["shared@example.com"]}))
    services.any_store.save(UserTO(username="b", realm="/", plain_attrs={"email": ["shared@example.com"]}))
    rule = services.correlation_rules.get(provision)

    result = correlate(services.any_store, rule, _obj(uid="c", mail="shared@example.com"), provision)

    assert result.outcome == CorrelationOutcome.MANY
    with pytest.raises(AmbiguousCorrelationError) as exc_info:
        result.match
    assert len(exc_info.value.matches) == 2


def test_attribute_rule_needs_mapped_schemas(services, provision):
    provision.correlation_rule = "attributes"
    provision.correlation_conf = {"schemas": ["department"]}
    rule = services.correlation_rules.get(provision)

    with pytest.raises(MappingError):
        rule.get_search_cond(_obj(uid="jdoe"), provision)


def test_unknown_rule(services, provision):
    provision.correlation_rule = "fuzzy"

    with pytest.raises(MappingError, match="fuzzy"):
        services.correlation_rules.get(provision)


def test_registered_rule_is_used(services, provision):
    class ByEmail(CorrelationRule):
        def get_search_cond(self, obj, provision):
            accessor = self.mapping_manager.schema_registry.resolve(AnyKind.USER, "email")
            return SearchCond("email", obj.get_attribute_by_name("mail").single_value, accessor)

    services.correlation_rules.register("by-email", ByEmail)
    provision.correlation_rule = "by-email"
    saved = services.any_store.save(UserTO(username="jd", realm="/", plain_attrs={"email": ["j@example.com"]}))

    result = correlate(services.any_store, services.correlation_rules.get(provision),
                       _obj(uid="other", mail="j@example.com"), provision)

    assert result.match.key == saved.key
