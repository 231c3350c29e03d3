"""Pull/push action hooks.

Actions are ordered strategy lists attached to a task. Every hook is called
in registration order through :func:`run_actions`; a failing hook aborts the
current record only, unless the action is ``batch_fatal``, in which case the
whole run is aborted.

Usage:
    class StampPullActions(PullActions):
        def before_provision(self, profile, obj, to):
            to.plain_attrs["source"] = [profile.task.resource.key]
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from ..connectors.base import Connector, ConnectorObject
from .errors import ActionError, IgnoreProvisionError, JobExecutionError
from .model import AnyKind, AnyTO, GroupTO, UserTO
from .store import AnyStore

logger = logging.getLogger(__name__)

CLEARTEXT = "CLEARTEXT"


@dataclass
class ProvisioningProfile:
    """Context shared by all hooks of one task run."""
    task: Any
    connector: Connector
    any_store: AnyStore
    results: List[Any] = field(default_factory=list)


class PullActions:
    """No-op base class for pull hooks."""

    batch_fatal = False

    def before_all(self, profile: ProvisioningProfile) -> None:
        pass

    def before_provision(self, profile: ProvisioningProfile, obj: ConnectorObject, to: AnyTO) -> None:
        pass

    def before_assign(self, profile: ProvisioningProfile, obj: ConnectorObject, to: AnyTO) -> None:
        pass

    def before_update(self, profile: ProvisioningProfile, obj: ConnectorObject, entity: AnyTO, patch) -> None:
        pass

    def before_delete(self, profile: ProvisioningProfile, obj: ConnectorObject, entity: AnyTO) -> None:
        pass

    def before_link(self, profile: ProvisioningProfile, obj: ConnectorObject, entity: AnyTO) -> None:
        pass

    def before_unlink(self, profile: ProvisioningProfile, obj: ConnectorObject, entity: AnyTO) -> None:
        pass

    def after(self, profile: ProvisioningProfile, obj: ConnectorObject, entity: Optional[AnyTO], report) -> None:
        pass

    def on_error(self, profile: ProvisioningProfile, obj: ConnectorObject, report, error: Exception) -> None:
        """Called when the current record fails or is vetoed."""

    def after_all(self, profile: ProvisioningProfile) -> None:
        pass


class PushActions:
    """No-op base class for push hooks."""

    batch_fatal = False

    def before_all(self, profile: ProvisioningProfile) -> None:
        pass

    def before_provision(self, profile: ProvisioningProfile, entity: AnyTO) -> None:
        pass

    def before_assign(self, profile: ProvisioningProfile, entity: AnyTO) -> None:
        pass

    def before_update(self, profile: ProvisioningProfile, entity: AnyTO) -> None:
        pass

    def before_delete(self, profile: ProvisioningProfile, entity: AnyTO) -> None:
        pass

    def before_link(self, profile: ProvisioningProfile, entity: AnyTO) -> None:
        pass

    def before_unlink(self, profile: ProvisioningProfile, entity: AnyTO) -> None:
        pass

    def after(self, profile: ProvisioningProfile, entity: AnyTO, report) -> None:
        pass

    def on_error(self, profile: ProvisioningProfile, entity: AnyTO, report, error: Exception) -> None:
        pass

    def after_all(self, profile: ProvisioningProfile) -> None:
        pass


def run_actions(actions: List[Any], phase: str, *args: Any) -> None:
    """Invoke ``phase`` on every action, in registration order.

    Raises:
        IgnoreProvisionError: An action vetoed the current record
        ActionError: An action failed; the current record is aborted
        JobExecutionError: A batch-fatal action failed; the run is aborted
    """
    for action in actions:
        hook = getattr(action, phase, None)
        if hook is None:
            continue
        try:
            hook(*args)
        except IgnoreProvisionError:
            raise
        except Exception as e:
            name = type(action).__name__
            if getattr(action, "batch_fatal", False):
                logger.error(f"Batch-fatal action {name}.{phase} failed: {e}")
                raise JobExecutionError(f"{name}.{phase} failed: {e}") from e
            raise ActionError(name, phase, e) from e


# ─────────────────────────────────────────────────────────────────────────────
# Bundled actions
# ─────────────────────────────────────────────────────────────────────────────
class DBPasswordPullActions(PullActions):
    """Carry passwords already hashed by the remote store over as-is.

    When the connector declares a ``cipherAlgorithm`` other than CLEARTEXT,
    the password seen before the write is kept aside and, in ``after``,
    stored verbatim (upper-cased) tagged with that algorithm. The stash
    belongs to one record only: every ``before_*`` hook clears it, and
    ``after`` writes it only for the remote object it was taken from.
    """

    def __init__(self):
        self._encoded_password: Optional[str] = None
        self._cipher_algorithm: Optional[str] = None
        self._uid: Optional[str] = None

    @property
    def has_state(self) -> bool:
        return self._encoded_password is not None or self._cipher_algorithm is not None

    def _reset(self) -> None:
        self._encoded_password = None
        self._cipher_algorithm = None
        self._uid = None

    def _stash(self, profile: ProvisioningProfile, obj: Optional[ConnectorObject], password: Optional[str]) -> None:
        cipher = profile.connector.conn_instance.conf_value("cipherAlgorithm", CLEARTEXT)
        if password and str(cipher).upper() != CLEARTEXT:
            self._encoded_password = password
            self._cipher_algorithm = str(cipher).upper()
            self._uid = obj.uid if obj is not None else None

    def before_provision(self, profile, obj, to):
        self._reset()
        if isinstance(to, UserTO):
            self._stash(profile, obj, to.password)

    before_assign = before_provision

    def before_update(self, profile, obj, entity, patch):
        self._reset()
        if isinstance(entity, UserTO) and getattr(patch, "password", None) is not None:
            self._stash(profile, obj, patch.password.value)

    def before_link(self, profile, obj, entity):
        self._reset()

    before_unlink = before_link

    def before_delete(self, profile, obj, entity):
        self._reset()

    def after(self, profile, obj, entity, report):
        try:
            same_record = self._uid == (obj.uid if obj is not None else None)
            if (same_record and isinstance(entity, UserTO) and entity.key
                    and self._encoded_password and self._cipher_algorithm):
                profile.any_store.set_password(entity.key, self._encoded_password.upper(), self._cipher_algorithm)
        finally:
            self._reset()

    def on_error(self, profile, obj, report, error):
        self._reset()


class MembershipPullActions(PullActions):
    """Reconcile user memberships of pulled groups from their member attribute.

    Storage memberships of each pulled group are recorded before the group is
    written and the remote member names after. Members are resolved in
    ``after_all``, once the users pulled in the same run exist, and both
    user -> groups maps are handed to ``schedule``.

    Args:
        schedule: Callable receiving (before, after) membership maps
        member_attribute: Remote attribute listing the group members
    """

    def __init__(self, schedule: Callable[[Dict[str, Set[str]], Dict[str, Set[str]]], Any],
                 member_attribute: str = "member"):
        self.schedule = schedule
        self.member_attribute = member_attribute
        self.before: Dict[str, Set[str]] = {}
        self.after_map: Dict[str, Set[str]] = {}
        self.remote_members: Dict[str, List[str]] = {}

    def before_all(self, profile):
        self.before = {}
        self.after_map = {}
        self.remote_members = {}

    def _record_before(self, profile: ProvisioningProfile, group: AnyTO) -> None:
        if not isinstance(group, GroupTO):
            return
        for user in profile.any_store.find_members(group.key):
            self.before.setdefault(user.key, set()).add(group.key)

    def before_update(self, profile, obj, entity, patch):
        self._record_before(profile, entity)

    def before_delete(self, profile, obj, entity):
        self._record_before(profile, entity)

    def after(self, profile, obj, entity, report):
        if not isinstance(entity, GroupTO) or not entity.key:
            return
        attr = obj.get_attribute_by_name(self.member_attribute)
        self.remote_members[entity.key] = [str(member) for member in (attr.values if attr else [])]

    def after_all(self, profile):
        for group_key, members in self.remote_members.items():
            for member in members:
                user = profile.any_store.find_by_name(AnyKind.USER, member) \
                    or profile.any_store.find(AnyKind.USER, member)
                if user is None:
                    logger.debug(f"Member {member} of group {group_key} not found, skipping")
                    continue
                self.after_map.setdefault(user.key, set()).add(group_key)
        if self.before or self.after_map:
            self.schedule(self.before, self.after_map)
