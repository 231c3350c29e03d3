"""Unit tests for the set-memberships job."""
import pytest

from idmsync.core.errors import JobExecutionError, NotFoundError
from idmsync.core.memberships import SetUMembershipsJob, build_membership_patches
from idmsync.core.model import GroupTO, UserTO
from idmsync.core.patch import PatchOperation


def _ops(patch):
    return [(m.group, m.operation) for m in patch.memberships]


def test_patches_add_then_delete():
    patches = build_membership_patches({"u1": {"g1", "g2"}}, {"u1": {"g2", "g3"}})

    assert list(patches) == ["u1"]
    assert _ops(patches["u1"]) == [("g3", PatchOperation.ADD_REPLACE), ("g1", PatchOperation.DELETE)]


def test_user_missing_after_only_gets_deletions():
    patches = build_membership_patches({"u1": ["g1", "g2"]}, {})

    assert _ops(patches["u1"]) == [("g1", PatchOperation.DELETE), ("g2", PatchOperation.DELETE)]


def test_unchanged_user_gets_no_patch():
    assert build_membership_patches({"u1": ["g1"]}, {"u1": ["g1"], "u2": []}) == {}


def test_job_applies_with_async_propagation():
    calls = []
    job = SetUMembershipsJob(lambda patch, **kwargs: calls.append((patch.key, kwargs)))

    message = job.run({}, {"u2": ["g1"], "u1": ["g1"]})

    assert calls == [("u1", {"null_priority_async": True}), ("u2", {"null_priority_async": True})]
    assert message == "Memberships updated for 2 user(s)"


def test_job_wraps_failures():
    def update(patch, **kwargs):
        raise NotFoundError(f"USER {patch.key}")

    with pytest.raises(JobExecutionError, match="u1"):
        SetUMembershipsJob(update).run({}, {"u1": ["g1"]})


def test_job_updates_stored_users(services):
    group = services.any_store.save(GroupTO(name="staff", realm="/"))
    old = services.any_store.save(GroupTO(name="old", realm="/"))
    user = services.any_store.save(UserTO(username="jdoe", realm="/", memberships=[old.key]))

    services.memberships_job.run({user.key: [old.key]}, {user.key: [group.key]})

    assert services.any_store.get("USER", user.key).memberships == [group.key]
