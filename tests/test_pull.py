"""Pull reconciliation from the HR resource into internal storage."""
import json
import threading

import pytest

from idmsync.connectors import ConnectorObject
from idmsync.core.actions import PullActions
from idmsync.core.errors import ConflictError, IgnoreProvisionError
from idmsync.core.model import AnyKind, ResourceOperation, UserTO
from idmsync.core.tasks import ExecutionStatus, MatchingRule, ReportStatus, UnmatchingRule


@pytest.fixture
def hr(connector):
    """HR directory seeded with one account and one group."""
    hr_connector = connector("hr")
    hr_connector.put(ConnectorObject.build(
        "__ACCOUNT__", "jdoe", uid="jdoe", mail="jdoe@example.com", givenName="John", sn="Doe"))
    hr_connector.put(ConnectorObject.build("__GROUP__", "engineering", cn="engineering", member=["jdoe"]))
    return hr_connector


def _run(services, admin, key="hr-pull"):
    execution = services.task_logic.execute(admin, key)
    services.job_runner.wait(timeout=5)
    return execution


def _report(execution, any_type):
    return next(r for r in execution.reports if r.any_type == any_type)


def test_first_pull_creates_groups_then_users(services, admin, hr, connector):
    execution = _run(services, admin)

    assert execution.status == ExecutionStatus.SUCCESS
    assert [r.any_type for r in execution.reports] == ["GROUP", "USER"]
    assert execution.summary() == {"CREATE_SUCCESS": 2}

    user = services.any_store.find_by_name(AnyKind.USER, "jdoe")
    assert user.realm == "/employees"
    assert user.plain_attrs == {"email": ["jdoe@example.com"], "firstname": ["John"], "surname": ["Doe"]}
    assert user.resources == {"ldap"}

    # Random password compliant with the realm policy
    encoded, cipher = services.any_store.get_password(user.key)
    assert encoded and cipher == "SSHA256"

    ldap_account = connector("ldap").objects("__ACCOUNT__")[0]
    assert ldap_account.uid == "jdoe"
    assert ldap_account.get_attribute_by_name("cn").values == ["John Doe"]
    # Never written back to the pulled resource
    assert hr.operations == []


def test_memberships_are_set_after_the_run(services, admin, hr):
    _run(services, admin)

    group = services.any_store.find_by_name(AnyKind.GROUP, "engineering")
    user = services.any_store.find_by_name(AnyKind.USER, "jdoe")
    assert user.memberships == [group.key]


def test_second_pull_updates_changed_records_only(services, admin, hr, connector):
    _run(services, admin)
    hr.put(ConnectorObject.build(
        "__ACCOUNT__", "jdoe", uid="jdoe", mail="john.doe@example.com", givenName="John", sn="Doe"))

    execution = _run(services, admin)

    assert _report(execution, "GROUP").operation == ResourceOperation.NONE
    assert _report(execution, "GROUP").message == "Already in sync"
    assert _report(execution, "USER").operation == ResourceOperation.UPDATE
    user = services.any_store.find_by_name(AnyKind.USER, "jdoe")
    assert user.plain_attrs["email"] == ["john.doe@example.com"]
    assert connector("ldap").objects("__ACCOUNT__")[0].get_attribute_by_name("mail").values == [
        "john.doe@example.com"]


def test_unmapped_fields_survive_update(services, admin, hr):
    existing = services.any_store.save(UserTO(
        username="jdoe", realm="/employees/it", security_question="pet",
        plain_attrs={"email": ["old@example.com"], "department": ["R&D"]}))

    execution = _run(services, admin)

    assert _report(execution, "USER").key == existing.key
    user = services.any_store.get(AnyKind.USER, existing.key)
    assert user.realm == "/employees/it"
    assert user.security_question == "pet"
    assert user.plain_attrs["department"] == ["R&D"]
    assert user.plain_attrs["email"] == ["jdoe@example.com"]


def test_ambiguous_match_becomes_remediation(services, admin, hr):
    provision = services.resources["hr"].get_provision("USER")
    provision.correlation_rule = "attributes"
    provision.correlation_conf = {"schemas": ["email"]}
    for username in ("john", "johnny"):
        services.any_store.save(UserTO(username=username, realm="/", plain_attrs={"email": ["jdoe@example.com"]}))

    execution = _run(services, admin)

    report = _report(execution, "USER")
    assert report.status == ReportStatus.FAILURE
    assert report.operation == ResourceOperation.CREATE
    assert execution.status == ExecutionStatus.SUCCESS

    total, remediations = services.remediation_logic.list(admin)
    assert total == 1
    remediation = remediations[0]
    assert remediation.operation == ResourceOperation.CREATE
    assert remediation.pull_task == "hr-pull"
    assert remediation.remote_name == "jdoe"
    assert remediation.payload.username == "jdoe"
    # The candidate of a remediation never carries a generated password
    assert remediation.payload.password is None


def test_mapping_failure_becomes_remediation(services, admin, hr):
    hr.put(ConnectorObject.build("__ACCOUNT__", "nokey", mail="nokey@example.com"))

    execution = _run(services, admin)

    failed = [r for r in execution.reports if r.status == ReportStatus.FAILURE]
    assert [r.uid for r in failed] == ["nokey"]
    _, remediations = services.remediation_logic.list(admin)
    assert remediations[0].payload is None
    assert "uid" in remediations[0].error


def test_without_remediation_failures_are_only_reported(services, admin, hr):
    services.registry.pull_tasks["hr-pull"].remediation = False
    hr.put(ConnectorObject.build("__ACCOUNT__", "nokey", mail="nokey@example.com"))

    _run(services, admin)

    assert services.remediation_logic.list(admin) == (0, [])


def test_perform_delete_removes_unseen_entities(services, admin, hr):
    services.registry.pull_tasks["hr-pull"].perform_delete = True
    gone = services.any_store.save(UserTO(username="gone", realm="/employees", resources={"hr"}))
    kept = services.any_store.save(UserTO(username="kept", realm="/employees"))

    execution = _run(services, admin)

    deletes = [r for r in execution.reports if r.operation == ResourceOperation.DELETE]
    assert [(r.key, r.status) for r in deletes] == [(gone.key, ReportStatus.SUCCESS)]
    assert services.any_store.find(AnyKind.USER, gone.key) is None
    assert services.any_store.find(AnyKind.USER, kept.key) is not None


def test_perform_delete_spares_ambiguous_candidates(services, admin, hr):
    services.registry.pull_tasks["hr-pull"].perform_delete = True
    provision = services.resources["hr"].get_provision("USER")
    provision.correlation_rule = "attributes"
    provision.correlation_conf = {"schemas": ["email"]}
    candidates = [
        services.any_store.save(UserTO(username=username, realm="/employees", resources={"hr"},
                                       plain_attrs={"email": ["jdoe@example.com"]}))
        for username in ("john", "johnny")
    ]
    gone = services.any_store.save(UserTO(username="gone", realm="/employees", resources={"hr"},
                                          plain_attrs={"email": ["gone@example.com"]}))

    execution = _run(services, admin)

    assert _report(execution, "USER").status == ReportStatus.FAILURE
    deletes = [r.key for r in execution.reports if r.operation == ResourceOperation.DELETE]
    assert deletes == [gone.key]
    for candidate in candidates:
        assert services.any_store.find(AnyKind.USER, candidate.key) is not None


def test_perform_delete_is_skipped_when_a_record_cannot_be_correlated(services, admin, hr):
    services.registry.pull_tasks["hr-pull"].perform_delete = True
    hr.put(ConnectorObject.build("__ACCOUNT__", "nokey", mail="nokey@example.com"))
    assigned = services.any_store.save(UserTO(username="someone", realm="/employees", resources={"hr"}))

    execution = _run(services, admin)

    assert [r.uid for r in execution.reports if r.status == ReportStatus.FAILURE] == ["nokey"]
    assert not [r for r in execution.reports if r.operation == ResourceOperation.DELETE]
    assert services.any_store.find(AnyKind.USER, assigned.key) is not None


def test_vetoed_record_does_not_lend_its_password_to_the_next(services, admin, hr):
    class VetoNewUsers(PullActions):
        def before_provision(self, profile, obj, to):
            raise IgnoreProvisionError(f"{obj.uid} is created by hand")

    services.register_action("veto-new", VetoNewUsers)
    services.registry.task_actions["hr-pull"] = ["dbPassword", "veto-new"]
    services.registry.pull_tasks["hr-pull"].matching_rule = MatchingRule.LINK
    hr.conn_instance.config["cipherAlgorithm"] = "SHA256"
    hr.put(ConnectorObject.build("__ACCOUNT__", "anew", uid="anew", mail="anew@example.com",
                                 __PASSWORD__="hash-of-anew"))
    existing = services.any_store.save(UserTO(username="jdoe", realm="/employees"))

    execution = _run(services, admin)

    statuses = {r.uid: r.status for r in execution.reports if r.any_type == "USER"}
    assert statuses["anew"] == ReportStatus.IGNORE
    assert services.any_store.get_password(existing.key) == (None, None)


@pytest.mark.parametrize("rule", [UnmatchingRule.IGNORE, UnmatchingRule.UNLINK])
def test_unmatching_rules_that_ignore(services, admin, hr, rule):
    services.registry.pull_tasks["hr-pull"].unmatching_rule = rule

    execution = _run(services, admin)

    assert {r.status for r in execution.reports} == {ReportStatus.IGNORE}
    assert services.any_store.find_by_name(AnyKind.USER, "jdoe") is None


def test_unmatching_assign_adds_the_pulled_resource(services, admin, hr):
    services.registry.pull_tasks["hr-pull"].unmatching_rule = UnmatchingRule.ASSIGN

    _run(services, admin)

    assert services.any_store.find_by_name(AnyKind.USER, "jdoe").resources == {"hr", "ldap"}


def test_matching_link_only_assigns(services, admin, hr):
    services.registry.pull_tasks["hr-pull"].matching_rule = MatchingRule.LINK
    existing = services.any_store.save(UserTO(username="jdoe", realm="/employees"))

    execution = _run(services, admin)

    report = _report(execution, "USER")
    assert report.operation == ResourceOperation.UPDATE
    assert services.any_store.get(AnyKind.USER, existing.key).resources == {"hr"}


def test_interrupt_stops_after_the_current_record(services, hr):
    interrupt = threading.Event()

    class StopAfterFirst(PullActions):
        def after(self, profile, obj, entity, report):
            interrupt.set()

    task = services.registry.pull_tasks["hr-pull"]
    task.actions = [StopAfterFirst()]

    execution = services.pull_executor.execute(task, interrupt)

    assert [r.any_type for r in execution.reports] == ["GROUP"]
    assert services.any_store.find_by_name(AnyKind.USER, "jdoe") is None


def test_unreachable_resource_fails_the_run(services, admin, hr):
    hr.available = False

    execution = _run(services, admin)

    assert execution.status == ExecutionStatus.FAILURE
    assert "unreachable" in execution.message
    assert services.task_logic.executions(admin, "hr-pull") == [execution]


def test_concurrent_run_is_rejected(services, admin, hr):
    gate = threading.Event()

    class Blocker(PullActions):
        def before_all(self, profile):
            gate.wait(timeout=5)

    services.register_action("blocker", Blocker)
    services.registry.task_actions["hr-pull"].append("blocker")

    assert services.task_logic.execute(admin, "hr-pull", asynchronous=True) is None
    with pytest.raises(ConflictError):
        services.task_logic.execute(admin, "hr-pull")
    assert services.task_logic.interrupt(admin, "hr-pull") is True

    gate.set()
    services.job_runner.wait(timeout=5)
    assert services.task_logic.interrupt(admin, "hr-pull") is False
    assert len(services.task_logic.executions(admin, "hr-pull")) == 1


def test_pull_is_audited(services, admin, hr, temp_audit_dir):
    _, audit_file = temp_audit_dir

    _run(services, admin)

    events = [json.loads(line) for line in audit_file.read_text().splitlines()]
    pulls = [(e["subcategory"], e["event"]) for e in events if e["category"] == "PULL"]
    assert pulls == [("hr", "create"), ("hr", "create")]
    task_events = [e for e in events if e["category"] == "TASK"]
    assert task_events[0]["output"] == {"CREATE_SUCCESS": 2}
    assert task_events[0]["who"] == "tester"
