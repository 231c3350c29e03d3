"""Propagation of internal changes to external resources.

:class:`PropagationManager` turns a :class:`PropagationByResource` into one
:class:`PropagationTask` per resource; :class:`PropagationTaskExecutor` runs
them and reports one :class:`PropagationStatus` per resource, in the order
the resources were attempted:

1. resources with a propagation priority, sequentially, lowest priority first;
2. the other resources, sorted by key, either synchronously or dispatched to
   the background job runner (``null_priority_async``).

A failure on a priority resource with ``priority_abort`` set leaves every
remaining resource NOT_ATTEMPTED.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Generic, Iterable, List, Optional, Set, TypeVar

from scripts import audit

from ..connectors.base import Attribute, ConnectorFactory
from .conn_object import get_conn_object_to
from .errors import IdmError
from .jobs import JobRunner
from .mapping import ExternalResource, MappingManager, Provision
from .model import AnyTO, ConnObjectTO, ResourceOperation

logger = logging.getLogger(__name__)


class ExecStatus(str, Enum):
    CREATED = "CREATED"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"


@dataclass
class PropagationStatus:
    resource: str
    status: ExecStatus
    before_obj: Optional[ConnObjectTO] = None
    after_obj: Optional[ConnObjectTO] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "status": self.status.value,
            "beforeObj": self.before_obj.to_dict() if self.before_obj else None,
            "afterObj": self.after_obj.to_dict() if self.after_obj else None,
            "failureReason": self.failure_reason,
        }


T = TypeVar("T")


@dataclass
class ProvisioningResult(Generic[T]):
    entity: T
    propagation_statuses: List[PropagationStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "entity": self.entity.to_dict() if hasattr(self.entity, "to_dict") else self.entity,
            "propagationStatuses": [s.to_dict() for s in self.propagation_statuses],
        }


class PropagationByResource:
    """Operation to perform on each resource; a resource is in at most one set."""

    def __init__(self):
        self._ops: Dict[ResourceOperation, Set[str]] = {
            ResourceOperation.CREATE: set(),
            ResourceOperation.UPDATE: set(),
            ResourceOperation.DELETE: set(),
        }
        self.old_conn_object_keys: Dict[str, str] = {}

    def add(self, operation: ResourceOperation, resource: str) -> None:
        if operation == ResourceOperation.CREATE:
            self._ops[ResourceOperation.UPDATE].discard(resource)
            self._ops[ResourceOperation.DELETE].discard(resource)
            self._ops[ResourceOperation.CREATE].add(resource)
        elif operation == ResourceOperation.UPDATE:
            if resource not in self._ops[ResourceOperation.CREATE]:
                self._ops[ResourceOperation.DELETE].discard(resource)
                self._ops[ResourceOperation.UPDATE].add(resource)
        elif operation == ResourceOperation.DELETE:
            self._ops[ResourceOperation.CREATE].discard(resource)
            self._ops[ResourceOperation.UPDATE].discard(resource)
            self._ops[ResourceOperation.DELETE].add(resource)

    def add_all(self, operation: ResourceOperation, resources: Iterable[str]) -> None:
        for resource in resources:
            self.add(operation, resource)

    def remove(self, resource: str) -> None:
        for resources in self._ops.values():
            resources.discard(resource)
        self.old_conn_object_keys.pop(resource, None)

    def get(self, operation: ResourceOperation) -> Set[str]:
        return set(self._ops[operation])

    def resources(self) -> Set[str]:
        return set().union(*self._ops.values())

    def operation_of(self, resource: str) -> Optional[ResourceOperation]:
        for operation, resources in self._ops.items():
            if resource in resources:
                return operation
        return None

    def is_empty(self) -> bool:
        return not any(self._ops.values())

    def __repr__(self) -> str:
        parts = {op.value: sorted(res) for op, res in self._ops.items() if res}
        return f"PropagationByResource({parts})"


@dataclass
class PropagationTask:
    resource: ExternalResource
    provision: Provision
    operation: ResourceOperation
    entity_key: Optional[str]
    conn_object_key: Optional[str]
    attributes: List[Attribute] = field(default_factory=list)
    old_conn_object_key: Optional[str] = None
    error: Optional[str] = None

    @property
    def object_class(self) -> str:
        return self.provision.object_class


class PropagationManager:
    """Build propagation tasks for an entity."""

    def __init__(self, mapping_manager: MappingManager, resources: Dict[str, ExternalResource]):
        self.mapping_manager = mapping_manager
        self.resources = resources

    def get_tasks(
        self,
        to: AnyTO,
        prop_by_res: PropagationByResource,
        password: Optional[str] = None,
        change_pwd: bool = True,
        enable: Optional[bool] = None,
        excluded_resources: Iterable[str] = (),
        password_resources: Optional[Iterable[str]] = None,
    ) -> List[PropagationTask]:
        """One task per resource of ``prop_by_res`` (minus the excluded ones).

        For DELETE tasks ``to`` must be the pre-image of the entity. When
        ``password_resources`` is given, the password only goes to those.
        """
        excluded = set(excluded_resources)
        password_targets = set(password_resources) if password_resources else None
        tasks = []
        for operation in (ResourceOperation.CREATE, ResourceOperation.UPDATE, ResourceOperation.DELETE):
            for resource_key in sorted(prop_by_res.get(operation) - excluded):
                resource = self.resources.get(resource_key)
                if resource is None:
                    logger.warning(f"Resource {resource_key} not found, not propagating")
                    continue
                provision = resource.get_provision(to.type) or resource.get_provision_by_kind(to.kind)
                if provision is None:
                    logger.debug(f"No provision for {to.type} on {resource_key}, not propagating")
                    continue
                send_pwd = change_pwd and (password_targets is None or resource_key in password_targets)
                tasks.append(self._build_task(
                    to, resource, provision, operation, password, send_pwd, enable,
                    prop_by_res.old_conn_object_keys.get(resource_key)))
        return tasks

    def _build_task(self, to, resource, provision, operation, password, change_pwd, enable, old_key):
        task = PropagationTask(resource, provision, operation, to.key, None, old_conn_object_key=old_key)
        try:
            if operation == ResourceOperation.DELETE:
                task.conn_object_key = self.mapping_manager.get_conn_object_key_value(to, provision)
            else:
                task.conn_object_key, task.attributes = self.mapping_manager.prepare_attrs(
                    to, provision, password, change_pwd, enable, resource.enforce_mandatory_condition)
        except IdmError as e:
            task.error = e.message
        return task


class PropagationTaskExecutor:
    """Run propagation tasks against the resources' connectors.

    Args:
        connector_factory: Factory providing one connector per resource
        job_runner: Background runner used for asynchronous propagation
        who: Name recorded as operator in the audit trail
    """

    def __init__(self, connector_factory: ConnectorFactory, job_runner: JobRunner, who: str = "system"):
        self.connector_factory = connector_factory
        self.job_runner = job_runner
        self.who = who

    def execute(
        self,
        tasks: List[PropagationTask],
        null_priority_async: bool = False,
        interrupt: Optional[threading.Event] = None,
    ) -> List[PropagationStatus]:
        prioritized = sorted(
            (t for t in tasks if t.resource.propagation_priority is not None),
            key=lambda t: (t.resource.propagation_priority, t.resource.key),
        )
        others = sorted(
            (t for t in tasks if t.resource.propagation_priority is None),
            key=lambda t: t.resource.key,
        )

        statuses: List[PropagationStatus] = []
        aborted_by: Optional[str] = None

        def skipped(task: PropagationTask) -> Optional[PropagationStatus]:
            if aborted_by is not None:
                return PropagationStatus(task.resource.key, ExecStatus.NOT_ATTEMPTED,
                                         failure_reason=f"Aborted after failure on {aborted_by}")
            if interrupt is not None and interrupt.is_set():
                return PropagationStatus(task.resource.key, ExecStatus.NOT_ATTEMPTED,
                                         failure_reason="Interrupted")
            return None

        for task in prioritized:
            status = skipped(task) or self.execute_task(task)
            statuses.append(status)
            if status.status == ExecStatus.FAILURE and task.resource.priority_abort:
                logger.warning(f"Propagation to priority resource {task.resource.key} failed, aborting the rest")
                aborted_by = task.resource.key

        for task in others:
            status = skipped(task)
            if status is None:
                if null_priority_async:
                    self.job_runner.submit(self._execute_async, task, interrupt)
                    status = PropagationStatus(task.resource.key, ExecStatus.CREATED)
                else:
                    status = self.execute_task(task)
            statuses.append(status)

        return statuses

    def _execute_async(self, task: PropagationTask, interrupt: Optional[threading.Event]) -> PropagationStatus:
        if interrupt is not None and interrupt.is_set():
            logger.info(f"Not propagating to {task.resource.key}: interrupted")
            return PropagationStatus(task.resource.key, ExecStatus.NOT_ATTEMPTED, failure_reason="Interrupted")
        return self.execute_task(task)

    def execute_task(self, task: PropagationTask) -> PropagationStatus:
        """Read the before object, write, read the after object."""
        before_obj = after_obj = None
        try:
            if task.error:
                raise IdmError(task.error)

            connector = self.connector_factory.get_connector(task.resource)
            options = connector.get_operation_options(task.provision.mapping.items)
            lookup_key = task.old_conn_object_key or task.conn_object_key
            before = connector.get_object(task.object_class, lookup_key, options) if lookup_key else None
            before_obj = get_conn_object_to(lookup_key, before.all_attributes()) if before else None

            uid = None
            if task.operation == ResourceOperation.DELETE:
                if before is not None:
                    connector.delete(task.object_class, before.uid)
            elif before is None:
                uid = connector.create(task.object_class, task.attributes)
            else:
                uid = connector.update(task.object_class, before.uid, task.attributes)

            if uid is not None:
                after = connector.get_object(task.object_class, uid, options)
                after_obj = get_conn_object_to(task.conn_object_key, after.all_attributes()) if after else None

            status = PropagationStatus(task.resource.key, ExecStatus.SUCCESS, before_obj, after_obj)
        except Exception as e:
            logger.error(f"Propagation {task.operation.value} of {task.entity_key} to {task.resource.key} failed: {e}")
            status = PropagationStatus(task.resource.key, ExecStatus.FAILURE, before_obj, None, str(e))

        audit.safe_log_audit_event(
            "PROPAGATION",
            task.resource.key,
            task.operation.value.lower(),
            result="SUCCESS" if status.status == ExecStatus.SUCCESS else "FAILURE",
            who=self.who,
            key=task.entity_key,
            before=before_obj.to_dict() if before_obj else None,
            after=after_obj.to_dict() if after_obj else None,
            output=status.failure_reason,
        )
        return status

