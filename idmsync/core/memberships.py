"""Set-memberships reconciliation job.

Applies the user -> groups differences collected while pulling groups.
"""
from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Iterable, Set

from .errors import JobExecutionError
from .patch import MembershipPatch, PatchOperation, UserPatch

logger = logging.getLogger(__name__)


def build_membership_patches(
    before: Dict[str, Iterable[str]],
    after: Dict[str, Iterable[str]],
) -> Dict[str, UserPatch]:
    """One patch per user turning the ``before`` memberships into ``after``.

    First pass adds the groups present after but not before, second pass
    merges the deletions of groups present before but not after into the
    same per-user patch. Users without any change get no patch.
    """
    before_sets: Dict[str, Set[str]] = {user: set(groups) for user, groups in before.items()}
    after_sets: Dict[str, Set[str]] = {user: set(groups) for user, groups in after.items()}
    patches: Dict[str, UserPatch] = {}

    for user, groups in after_sets.items():
        for group in sorted(groups - before_sets.get(user, set())):
            patch = patches.setdefault(user, UserPatch(key=user))
            patch.memberships.append(MembershipPatch(group, PatchOperation.ADD_REPLACE))

    for user, groups in before_sets.items():
        for group in sorted(groups - after_sets.get(user, set())):
            patch = patches.setdefault(user, UserPatch(key=user))
            patch.memberships.append(MembershipPatch(group, PatchOperation.DELETE))

    return {user: patch for user, patch in patches.items() if not patch.is_empty()}


class SetUMembershipsJob:
    """Apply membership patches with asynchronous propagation.

    Args:
        update: Callable applying a patch, e.g. ``ProvisioningManager.update``;
            called as ``update(patch, null_priority_async=True)``
    """

    def __init__(self, update: Callable[..., Any]):
        self.update = update

    def run(self, before: Dict[str, Iterable[str]], after: Dict[str, Iterable[str]]) -> str:
        patches = build_membership_patches(before, after)
        for user, patch in sorted(patches.items()):
            logger.debug(f"Updating memberships of user {user}: {patch.to_dict()}")
            try:
                self.update(patch, null_priority_async=True)
            except Exception as e:
                raise JobExecutionError(f"While updating memberships of user {user}: {e}") from e
        return f"Memberships updated for {len(patches)} user(s)"
