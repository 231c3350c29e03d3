"""Logic layer: authorization and audit around the provisioning manager.

Every public method takes the caller's :class:`AuthContext` first, checks the
required entitlement and the realm scope, then delegates to provisioning.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from scripts import audit

from ..connectors.base import ConnectorFactory
from ..connectors.exceptions import ConnectorError
from .conn_object import ConnObjectUtils
from .errors import (
    ClientError,
    ConflictError,
    GroupOwnershipError,
    InvalidRealmError,
    NotFoundError,
    RequiredValuesMissingError,
)
from .jobs import JobRunner
from .mapping import ExternalResource
from .model import AnyKind, AnyTO, ConnObjectTO, GroupTO, UserTO, etag_of
from .patch import AnyPatch, PasswordPatch, PatchOperation, StringPatchItem, new_patch
from .propagation import ProvisioningResult
from .provisioning import ProvisioningManager
from .pull import PullExecutor
from .push import PushExecutor
from .security import AuthContext, Entitlement, get_effective_realms, requires_entitlement, security_checks
from .store import AnyStore, RealmStore, Remediation, RemediationStore
from .tasks import PullTask, PushTask, TaskExecution

logger = logging.getLogger(__name__)


def kind_of_type(any_type: str) -> AnyKind:
    """Kind of an any type name: USER, GROUP, anything else is an any object."""
    if any_type in (AnyKind.USER.value, AnyKind.GROUP.value):
        return AnyKind(any_type)
    return AnyKind.ANY_OBJECT


def _paginate(items: List, page: int, size: int) -> List:
    page = max(page, 1)
    return items[(page - 1) * size: page * size]


class AnyLogic:
    """Operations on users, groups or any objects (one instance per kind)."""

    def __init__(
        self,
        kind: AnyKind,
        any_store: AnyStore,
        realm_store: RealmStore,
        provisioning_manager: ProvisioningManager,
    ):
        self.kind = AnyKind(kind)
        self.any_store = any_store
        self.realm_store = realm_store
        self.provisioning_manager = provisioning_manager

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────
    def _check_realm(self, auth: AuthContext, action: str, key: Optional[str], realm: str) -> None:
        entitlement = Entitlement.for_kind(self.kind, action)
        security_checks(get_effective_realms(auth.realms_for(entitlement), realm), self.kind, key, realm)

    def _audit(self, auth: AuthContext, event: str, key: Optional[str], before=None, after=None,
               result: str = "SUCCESS", output=None) -> None:
        audit.safe_log_audit_event(
            "LOGIC",
            self.kind.value,
            event,
            result=result,
            who=auth.username,
            key=key,
            before=before.to_dict() if hasattr(before, "to_dict") else before,
            after=after.to_dict() if hasattr(after, "to_dict") else after,
            output=output,
        )

    def _resource_patch(self, key: str, resources: Iterable[str], operation: PatchOperation) -> AnyPatch:
        patch = new_patch(self.kind, key)
        patch.resources = [StringPatchItem(r, operation) for r in sorted(set(resources))]
        return patch

    # ─────────────────────────────────────────────────────────────────────────
    # Read
    # ─────────────────────────────────────────────────────────────────────────
    @requires_entitlement("{kind}_READ")
    def read(self, auth: AuthContext, key: str) -> AnyTO:
        to = self.any_store.get(self.kind, key)
        self._check_realm(auth, "READ", key, to.realm)
        return to

    @requires_entitlement("{kind}_SEARCH")
    def search(
        self,
        auth: AuthContext,
        realm: str = "/",
        predicate: Optional[Callable[[AnyTO], bool]] = None,
        page: int = 1,
        size: int = 25,
    ) -> Tuple[int, List[AnyTO]]:
        """Entities under ``realm`` visible to the caller, with the total count."""
        realms = get_effective_realms(auth.realms_for(Entitlement.for_kind(self.kind, "SEARCH")), realm)
        # Restrict the caller's wider realms to the requested one
        scopes = {r if r.startswith(realm.rstrip("/") + "/") or r == realm else realm for r in realms}
        matching = self.any_store.search(self.kind, predicate, scopes) if scopes else []
        return len(matching), _paginate(matching, page, size)

    # ─────────────────────────────────────────────────────────────────────────
    # Write
    # ─────────────────────────────────────────────────────────────────────────
    @requires_entitlement("{kind}_CREATE")
    def create(self, auth: AuthContext, to: AnyTO, null_priority_async: bool = False) -> ProvisioningResult:
        if to.kind != self.kind:
            raise ClientError(f"Expected {self.kind.value}, got {to.kind.value}")
        if not to.realm:
            raise InvalidRealmError("Realm is required")
        self.realm_store.get(to.realm)
        if not to.display_name:
            field_name = "username" if isinstance(to, UserTO) else "name"
            raise RequiredValuesMissingError(f"{field_name} is required", [field_name])
        self._check_realm(auth, "CREATE", None, to.realm)

        # Keys are assigned by storage
        to = to.copy()
        to.key = None
        key, statuses = self.provisioning_manager.create(to, null_priority_async)
        created = self.any_store.get(self.kind, key)
        self._audit(auth, "create", key, after=created)
        return ProvisioningResult(created, statuses)

    @requires_entitlement("{kind}_UPDATE")
    def update(
        self,
        auth: AuthContext,
        patch: AnyPatch,
        null_priority_async: bool = False,
        if_match: Optional[str] = None,
    ) -> ProvisioningResult:
        """Apply ``patch``; with ``if_match`` the entity ETag must still match.

        Raises:
            ConflictError: ``if_match`` differs from the current ETag
        """
        original = self.any_store.get(self.kind, patch.key)
        if if_match and if_match != etag_of(original):
            raise ConflictError(f"{self.kind.value} {patch.key} changed since {if_match}", [patch.key])
        self._check_realm(auth, "UPDATE", patch.key, original.realm)
        if patch.realm is not None and patch.realm.value:
            self.realm_store.get(patch.realm.value)

        if patch.is_empty():
            logger.debug(f"Empty patch for {self.kind.value} {patch.key}, skipping")
            return ProvisioningResult(original, [])

        _, statuses = self.provisioning_manager.update(patch, null_priority_async)
        updated = self.any_store.get(self.kind, patch.key)
        self._audit(auth, "update", patch.key, before=original, after=updated)
        return self._after_update(auth, ProvisioningResult(updated, statuses))

    def _after_update(self, auth: AuthContext, result: ProvisioningResult) -> ProvisioningResult:
        return result

    @requires_entitlement("{kind}_DELETE")
    def delete(
        self,
        auth: AuthContext,
        key: str,
        null_priority_async: bool = False,
        if_match: Optional[str] = None,
    ) -> ProvisioningResult:
        before = self.any_store.get(self.kind, key)
        if if_match and if_match != etag_of(before):
            raise ConflictError(f"{self.kind.value} {key} changed since {if_match}", [key])
        self._check_realm(auth, "DELETE", key, before.realm)
        self._before_delete(before)

        statuses = self.provisioning_manager.delete(self.kind, key, null_priority_async)
        self._audit(auth, "delete", key, before=before)
        return ProvisioningResult(before, statuses)

    def _before_delete(self, before: AnyTO) -> None:
        pass

    # ─────────────────────────────────────────────────────────────────────────
    # Resources
    # ─────────────────────────────────────────────────────────────────────────
    def _update_checks(self, auth: AuthContext, key: str) -> AnyTO:
        to = self.any_store.get(self.kind, key)
        self._check_realm(auth, "UPDATE", key, to.realm)
        return to

    @requires_entitlement("{kind}_UPDATE")
    def link(self, auth: AuthContext, key: str, resources: Iterable[str]) -> AnyTO:
        """Assign ``resources`` without propagating."""
        before = self._update_checks(auth, key)
        self.provisioning_manager.link(self._resource_patch(key, resources, PatchOperation.ADD_REPLACE))
        after = self.any_store.get(self.kind, key)
        self._audit(auth, "link", key, before=before, after=after)
        return after

    @requires_entitlement("{kind}_UPDATE")
    def unlink(self, auth: AuthContext, key: str, resources: Iterable[str]) -> AnyTO:
        """Unassign ``resources`` without propagating."""
        before = self._update_checks(auth, key)
        self.provisioning_manager.unlink(self._resource_patch(key, resources, PatchOperation.DELETE))
        after = self.any_store.get(self.kind, key)
        self._audit(auth, "unlink", key, before=before, after=after)
        return after

    @requires_entitlement("{kind}_UPDATE")
    def assign(
        self,
        auth: AuthContext,
        key: str,
        resources: Iterable[str],
        change_pwd: bool = False,
        password: Optional[str] = None,
        null_priority_async: bool = False,
    ) -> ProvisioningResult:
        """Assign ``resources`` and propagate."""
        self._update_checks(auth, key)
        patch = self._resource_patch(key, resources, PatchOperation.ADD_REPLACE)
        if self.kind == AnyKind.USER and change_pwd and password:
            patch.password = PasswordPatch(value=password, on_storage=False, resources=sorted(set(resources)))
        return self.update(auth, patch, null_priority_async)

    @requires_entitlement("{kind}_UPDATE")
    def unassign(
        self, auth: AuthContext, key: str, resources: Iterable[str], null_priority_async: bool = False
    ) -> ProvisioningResult:
        """Unassign ``resources`` and delete the entity from them."""
        self._update_checks(auth, key)
        return self.update(auth, self._resource_patch(key, resources, PatchOperation.DELETE), null_priority_async)

    @requires_entitlement("{kind}_UPDATE")
    def provision(
        self,
        auth: AuthContext,
        key: str,
        resources: Iterable[str],
        change_pwd: bool = False,
        password: Optional[str] = None,
        null_priority_async: bool = False,
    ) -> ProvisioningResult:
        """Propagate to ``resources`` without assigning them."""
        to = self._update_checks(auth, key)
        statuses = self.provisioning_manager.provision(
            self.kind, key, resources, change_pwd, password, null_priority_async)
        self._audit(auth, "provision", key, after=to, output=[s.to_dict() for s in statuses])
        return ProvisioningResult(to, statuses)

    @requires_entitlement("{kind}_UPDATE")
    def deprovision(
        self, auth: AuthContext, key: str, resources: Iterable[str], null_priority_async: bool = False
    ) -> ProvisioningResult:
        """Delete from ``resources`` without unassigning them."""
        to = self._update_checks(auth, key)
        statuses = self.provisioning_manager.deprovision(self.kind, key, resources, null_priority_async)
        self._audit(auth, "deprovision", key, before=to, output=[s.to_dict() for s in statuses])
        return ProvisioningResult(to, statuses)


class GroupLogic(AnyLogic):
    """Group operations: realm re-check after update, ownership guard on delete."""

    def __init__(self, any_store: AnyStore, realm_store: RealmStore, provisioning_manager: ProvisioningManager):
        super().__init__(AnyKind.GROUP, any_store, realm_store, provisioning_manager)

    def _after_update(self, auth: AuthContext, result: ProvisioningResult) -> ProvisioningResult:
        # The update is persisted; the caller is still told when the group left its scope
        group: GroupTO = result.entity
        self._check_realm(auth, "UPDATE", group.key, group.realm)
        return result

    def _before_delete(self, before: AnyTO) -> None:
        owned = self.any_store.find_owned_by_group(before.key)
        if owned:
            raise GroupOwnershipError(
                f"Group {before.name} owns {len(owned)} group(s)",
                [f"{g.key} {g.name}" for g in owned],
            )


class RemediationLogic:
    """List, discard or replay remediations."""

    def __init__(self, remediation_store: RemediationStore, any_store: AnyStore, logics: Dict[AnyKind, AnyLogic]):
        self.remediation_store = remediation_store
        self.any_store = any_store
        self.logics = logics

    @requires_entitlement(Entitlement.REMEDIATION_LIST)
    def list(
        self,
        auth: AuthContext,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
        page: int = 1,
        size: int = 25,
    ) -> Tuple[int, List[Remediation]]:
        items = self.remediation_store.list(before, after)
        return len(items), _paginate(items, page, size)

    def _find(self, key: str) -> Remediation:
        remediation = self.remediation_store.find(key)
        if remediation is None:
            raise NotFoundError(f"Remediation {key}", [key])
        return remediation

    @requires_entitlement(Entitlement.REMEDIATION_READ)
    def read(self, auth: AuthContext, key: str) -> Remediation:
        return self._find(key)

    @requires_entitlement(Entitlement.REMEDIATION_DELETE)
    def delete(self, auth: AuthContext, key: str) -> None:
        self.remediation_store.delete(key)
        audit.safe_log_audit_event("REMEDIATION", "remediation", "delete", who=auth.username, key=key)

    def _check_etag(self, remediation: Remediation, any_key: str, if_match: Optional[str]) -> None:
        current = self.any_store.find(kind_of_type(remediation.any_type), any_key)
        if current is None:
            raise NotFoundError(f"{remediation.any_type} for {remediation.key}", [any_key])
        etag = etag_of(current)
        if remediation.etag and remediation.etag != etag:
            raise ConflictError(f"{remediation.any_type} {any_key} changed since remediation {remediation.key}",
                                [any_key])
        if if_match and if_match != etag:
            raise ConflictError(f"{remediation.any_type} {any_key} changed since {if_match}", [any_key])

    def _done(self, auth: AuthContext, remediation: Remediation, result: ProvisioningResult) -> ProvisioningResult:
        self.remediation_store.delete(remediation.key)
        audit.safe_log_audit_event(
            "REMEDIATION", remediation.any_type, f"remedy_{remediation.operation.value.lower()}",
            who=auth.username, key=remediation.key, after=result.to_dict())
        return result

    @requires_entitlement(Entitlement.REMEDIATION_REMEDY)
    def remedy_create(
        self, auth: AuthContext, key: str, to: AnyTO, null_priority_async: bool = False
    ) -> ProvisioningResult:
        remediation = self._find(key)
        result = self.logics[kind_of_type(remediation.any_type)].create(auth, to, null_priority_async)
        return self._done(auth, remediation, result)

    @requires_entitlement(Entitlement.REMEDIATION_REMEDY)
    def remedy_update(
        self,
        auth: AuthContext,
        key: str,
        patch: AnyPatch,
        null_priority_async: bool = False,
        if_match: Optional[str] = None,
    ) -> ProvisioningResult:
        """Replay an update; the target must not have changed since the remediation was recorded."""
        remediation = self._find(key)
        self._check_etag(remediation, patch.key, if_match)
        result = self.logics[kind_of_type(remediation.any_type)].update(auth, patch, null_priority_async)
        return self._done(auth, remediation, result)

    @requires_entitlement(Entitlement.REMEDIATION_REMEDY)
    def remedy_delete(
        self,
        auth: AuthContext,
        key: str,
        any_key: str,
        null_priority_async: bool = False,
        if_match: Optional[str] = None,
    ) -> ProvisioningResult:
        remediation = self._find(key)
        self._check_etag(remediation, any_key, if_match)
        result = self.logics[kind_of_type(remediation.any_type)].delete(auth, any_key, null_priority_async)
        return self._done(auth, remediation, result)


class ResourceLogic:
    """Read-only view of external resources and their objects."""

    def __init__(
        self,
        resources: Dict[str, ExternalResource],
        connector_factory: ConnectorFactory,
        conn_object_utils: ConnObjectUtils,
        any_store: AnyStore,
    ):
        self.resources = resources
        self.connector_factory = connector_factory
        self.conn_object_utils = conn_object_utils
        self.any_store = any_store

    def _resource(self, key: str) -> ExternalResource:
        resource = self.resources.get(key)
        if resource is None:
            raise NotFoundError(f"Resource {key}", [key])
        return resource

    def _provision(self, resource: ExternalResource, any_type: str):
        provision = resource.get_provision(any_type)
        if provision is None:
            raise NotFoundError(f"Provision for {any_type} on {resource.key}", [any_type])
        return provision

    @requires_entitlement(Entitlement.RESOURCE_READ)
    def read(self, auth: AuthContext, key: str) -> ExternalResource:
        return self._resource(key)

    @requires_entitlement(Entitlement.RESOURCE_READ)
    def list(self, auth: AuthContext) -> List[ExternalResource]:
        return [self.resources[key] for key in sorted(self.resources)]

    @requires_entitlement(Entitlement.RESOURCE_GET_CONNOBJECT)
    def read_conn_object(self, auth: AuthContext, key: str, any_type: str, any_key: str) -> ConnObjectTO:
        """Remote object of entity ``any_key`` on resource ``key``."""
        resource = self._resource(key)
        provision = self._provision(resource, any_type)
        to = self.any_store.get(provision.kind, any_key)
        conn_object_key = self.conn_object_utils.mapping_manager.get_conn_object_key_value(to, provision)
        if not conn_object_key:
            raise NotFoundError(f"Unable to compute connObjectKey of {any_key} on {key}", [any_key])

        connector = self.connector_factory.get_connector(resource)
        obj = connector.get_object(provision.object_class, conn_object_key,
                                   connector.get_operation_options(provision.mapping.items))
        if obj is None:
            raise NotFoundError(f"Object {conn_object_key} not found on {key}", [conn_object_key])
        return self.conn_object_utils.conn_object_to(obj, provision)

    @requires_entitlement(Entitlement.RESOURCE_LIST_CONNOBJECT)
    def list_conn_objects(
        self,
        auth: AuthContext,
        key: str,
        any_type: str,
        size: int = 25,
        paged_results_cookie: Optional[str] = None,
        order_by: Optional[List[str]] = None,
    ) -> Tuple[List[ConnObjectTO], Optional[str]]:
        """One page of remote objects plus the cookie of the next page (None when done)."""
        resource = self._resource(key)
        provision = self._provision(resource, any_type)
        connector = self.connector_factory.get_connector(resource)

        result: List[ConnObjectTO] = []

        def handler(obj) -> bool:
            result.append(self.conn_object_utils.conn_object_to(obj, provision))
            return True

        search_result = connector.search(provision.object_class, None, handler, size, paged_results_cookie, order_by)
        return result, search_result.paged_results_cookie

    @requires_entitlement(Entitlement.RESOURCE_CHECK)
    def check(self, auth: AuthContext, key: str) -> Tuple[bool, Optional[str]]:
        """Test connectivity; returns (ok, error message)."""
        resource = self._resource(key)
        try:
            self.connector_factory.create_connector(resource.conn_instance).test()
        except ConnectorError as e:
            logger.warning(f"Check of resource {key} failed: {e}")
            return False, str(e)
        return True, None


class TaskLogic:
    """Run pull and push tasks and keep their executions.

    Args:
        pull_tasks: Declared pull tasks by key
        push_tasks: Declared push tasks by key
        build_actions: Returns fresh action instances for a task key
        pull_executor: Runs pull tasks
        push_executor: Runs push tasks
        job_runner: Background runner for asynchronous executions
    """

    def __init__(
        self,
        pull_tasks: Dict[str, PullTask],
        push_tasks: Dict[str, PushTask],
        build_actions: Callable[[str], List],
        pull_executor: PullExecutor,
        push_executor: PushExecutor,
        job_runner: JobRunner,
    ):
        self.pull_tasks = pull_tasks
        self.push_tasks = push_tasks
        self.build_actions = build_actions
        self.pull_executor = pull_executor
        self.push_executor = push_executor
        self.job_runner = job_runner
        self._lock = threading.Lock()
        self._executions: Dict[str, List[TaskExecution]] = {}
        self._interrupts: Dict[str, threading.Event] = {}

    @requires_entitlement(Entitlement.TASK_READ)
    def list(self, auth: AuthContext) -> List[Dict[str, str]]:
        tasks = [{"key": k, "type": "PULL", "resource": t.resource.key} for k, t in self.pull_tasks.items()]
        tasks += [{"key": k, "type": "PUSH", "resource": t.resource.key} for k, t in self.push_tasks.items()]
        return sorted(tasks, key=lambda t: t["key"])

    @requires_entitlement(Entitlement.TASK_READ)
    def executions(self, auth: AuthContext, key: str) -> List[TaskExecution]:
        self._declared(key)
        with self._lock:
            return list(self._executions.get(key, []))

    def _declared(self, key: str):
        task = self.pull_tasks.get(key) or self.push_tasks.get(key)
        if task is None:
            raise NotFoundError(f"Task {key}", [key])
        return task

    def _run(self, key: str, who: str, interrupt: threading.Event) -> TaskExecution:
        try:
            task = replace(self._declared(key), actions=self.build_actions(key))
            executor = self.pull_executor if isinstance(task, PullTask) else self.push_executor
            execution = executor.execute(task, interrupt, who)
        finally:
            with self._lock:
                self._interrupts.pop(key, None)
        with self._lock:
            self._executions.setdefault(key, []).append(execution)
        return execution

    @requires_entitlement(Entitlement.TASK_EXECUTE)
    def execute(self, auth: AuthContext, key: str, asynchronous: bool = False) -> Optional[TaskExecution]:
        """Run task ``key``; when ``asynchronous`` the run is queued and None is returned.

        Raises:
            ConflictError: The task is already running
        """
        self._declared(key)
        with self._lock:
            if key in self._interrupts:
                raise ConflictError(f"Task {key} is already running", [key])
            interrupt = self._interrupts[key] = threading.Event()

        if asynchronous:
            self.job_runner.submit(self._run, key, auth.username, interrupt)
            return None
        return self._run(key, auth.username, interrupt)

    @requires_entitlement(Entitlement.TASK_EXECUTE)
    def interrupt(self, auth: AuthContext, key: str) -> bool:
        """Ask a running task to stop after the current record; False when it is not running."""
        self._declared(key)
        with self._lock:
            event = self._interrupts.get(key)
        if event is None:
            return False
        event.set()
        logger.info(f"{auth.username} interrupted task {key}")
        return True
