"""Push: reconcile internal entities onto an external resource.

Every entity of the source realm whose kind is provisioned on the task
resource is looked up remotely by its connector object key, then handled
according to the task matching rule (remote object found) or unmatching
rule (not found).
"""
from __future__ import annotations
import logging
import threading
from typing import List, Optional

from scripts import audit

from ..connectors.base import ConnectorFactory
from ..connectors.exceptions import ConnectorError
from .actions import ProvisioningProfile, run_actions
from .errors import IdmError, IgnoreProvisionError, JobExecutionError
from .mapping import MappingManager, Provision
from .model import AnyKind, AnyTO, ResourceOperation
from .patch import PatchOperation, StringPatchItem, new_patch
from .propagation import ExecStatus, PropagationStatus
from .provisioning import ProvisioningManager
from .store import AnyStore, now
from .tasks import ExecutionStatus, MatchingRule, ProvisioningReport, PushTask, ReportStatus, TaskExecution, UnmatchingRule

logger = logging.getLogger(__name__)

_KIND_ORDER = {AnyKind.GROUP: 0, AnyKind.USER: 1, AnyKind.ANY_OBJECT: 2}


def _check_statuses(statuses: List[PropagationStatus], resource_key: str) -> None:
    for status in statuses:
        if status.resource == resource_key and status.status == ExecStatus.FAILURE:
            raise IdmError(status.failure_reason or f"Propagation to {resource_key} failed")


class PushExecutor:
    """Run push tasks.

    Args:
        connector_factory: Factory providing the task resource connector
        mapping_manager: Computes connector object keys
        any_store: Entity storage
        provisioning_manager: Assigns resources and propagates
    """

    def __init__(
        self,
        connector_factory: ConnectorFactory,
        mapping_manager: MappingManager,
        any_store: AnyStore,
        provisioning_manager: ProvisioningManager,
    ):
        self.connector_factory = connector_factory
        self.mapping_manager = mapping_manager
        self.any_store = any_store
        self.provisioning_manager = provisioning_manager

    def execute(self, task: PushTask, interrupt: Optional[threading.Event] = None,
                who: str = "system") -> TaskExecution:
        """Run ``task`` and return its execution report."""
        execution = TaskExecution(task.key, start=now())
        logger.info(f"Push task {task.key} started on {task.resource.key}")
        try:
            try:
                connector = self.connector_factory.get_connector(task.resource)
            except ConnectorError as e:
                raise JobExecutionError(f"Connector for {task.resource.key} unavailable: {e}") from e

            profile = ProvisioningProfile(task, connector, self.any_store, execution.reports)
            run_actions(task.actions, "before_all", profile)

            for provision in sorted(task.resource.provisions, key=lambda p: _KIND_ORDER[p.kind]):
                for entity in self.any_store.search(provision.kind, realms=[task.source_realm]):
                    if interrupt is not None and interrupt.is_set():
                        break
                    self._handle(profile, provision, entity)

            run_actions(task.actions, "after_all", profile)
        except (JobExecutionError, ConnectorError) as e:
            logger.error(f"Push task {task.key} aborted: {e}")
            execution.status = ExecutionStatus.FAILURE
            execution.message = str(e)
        finally:
            execution.end = now()

        audit.safe_log_audit_event(
            "TASK", "push", task.key,
            result="SUCCESS" if execution.status == ExecutionStatus.SUCCESS else "FAILURE",
            who=who, key=task.key, output=execution.summary(),
        )
        logger.info(f"Push task {task.key} finished: {execution.summary()}")
        return execution

    def _handle(self, profile: ProvisioningProfile, provision: Provision, entity: AnyTO) -> None:
        task: PushTask = profile.task
        report = ProvisioningReport(provision.any_type, ResourceOperation.NONE,
                                    key=entity.key, name=entity.display_name)
        try:
            conn_object_key = self.mapping_manager.get_conn_object_key_value(entity, provision)
            report.uid = conn_object_key
            options = profile.connector.get_operation_options(provision.mapping.items)
            remote = profile.connector.get_object(provision.object_class, conn_object_key, options) \
                if conn_object_key else None

            if remote is None:
                self._unmatched(profile, provision, entity, report)
            else:
                self._matched(profile, provision, entity, report)
        except IgnoreProvisionError as e:
            report.status = ReportStatus.IGNORE
            report.message = e.message
        except JobExecutionError:
            raise
        except (IdmError, ConnectorError) as e:
            report.status = ReportStatus.FAILURE
            report.message = getattr(e, "message", None) or str(e)
            logger.warning(f"Push of {entity.key} to {task.resource.key} failed: {report.message}")
            try:
                run_actions(task.actions, "on_error", profile, entity, report, e)
            except IdmError as hook_error:
                logger.error(f"on_error hook failed for {entity.key}: {hook_error.message}")

        profile.results.append(report)
        audit.safe_log_audit_event(
            "PUSH", task.resource.key, report.operation.value.lower(),
            result="FAILURE" if report.status == ReportStatus.FAILURE else "SUCCESS",
            key=entity.key, before=entity.to_dict(), output=report.to_dict(),
        )

    def _assignment(self, entity: AnyTO, resource_key: str, operation: PatchOperation):
        patch = new_patch(entity.kind, entity.key)
        patch.resources = [StringPatchItem(resource_key, operation)]
        return patch

    def _unmatched(self, profile: ProvisioningProfile, provision: Provision, entity: AnyTO,
                   report: ProvisioningReport) -> None:
        task: PushTask = profile.task
        resource_key = task.resource.key
        rule = task.unmatching_rule

        if rule == UnmatchingRule.IGNORE:
            report.status = ReportStatus.IGNORE
            report.message = "No remote object, unmatching rule IGNORE"
            return

        if rule == UnmatchingRule.UNLINK:
            report.operation = ResourceOperation.UPDATE
            run_actions(task.actions, "before_unlink", profile, entity)
            self.provisioning_manager.unlink(self._assignment(entity, resource_key, PatchOperation.DELETE))
            run_actions(task.actions, "after", profile, entity, report)
            return

        if not task.perform_create:
            report.status = ReportStatus.IGNORE
            report.message = "No remote object, creation disabled"
            return

        report.operation = ResourceOperation.CREATE
        if rule == UnmatchingRule.ASSIGN:
            run_actions(task.actions, "before_assign", profile, entity)
            self.provisioning_manager.link(self._assignment(entity, resource_key, PatchOperation.ADD_REPLACE))
        else:
            run_actions(task.actions, "before_provision", profile, entity)
        _check_statuses(self.provisioning_manager.provision(entity.kind, entity.key, [resource_key]), resource_key)
        run_actions(task.actions, "after", profile, entity, report)

    def _matched(self, profile: ProvisioningProfile, provision: Provision, entity: AnyTO,
                 report: ProvisioningReport) -> None:
        task: PushTask = profile.task
        resource_key = task.resource.key
        rule = task.matching_rule

        if rule == MatchingRule.IGNORE:
            report.status = ReportStatus.IGNORE
            report.message = "Remote object found, matching rule IGNORE"
            return

        if rule in (MatchingRule.LINK, MatchingRule.UNLINK):
            report.operation = ResourceOperation.UPDATE
            link = rule == MatchingRule.LINK
            run_actions(task.actions, "before_link" if link else "before_unlink", profile, entity)
            patch = self._assignment(entity, resource_key, PatchOperation.ADD_REPLACE if link else PatchOperation.DELETE)
            if link:
                self.provisioning_manager.link(patch)
            else:
                self.provisioning_manager.unlink(patch)
            run_actions(task.actions, "after", profile, entity, report)
            return

        if rule == MatchingRule.UPDATE:
            if not task.perform_update:
                report.status = ReportStatus.IGNORE
                report.message = "Remote object found, update disabled"
                return
            report.operation = ResourceOperation.UPDATE
            run_actions(task.actions, "before_update", profile, entity)
            _check_statuses(self.provisioning_manager.provision(entity.kind, entity.key, [resource_key]),
                            resource_key)
            run_actions(task.actions, "after", profile, entity, report)
            return

        # DEPROVISION or UNASSIGN
        if not task.perform_delete:
            report.status = ReportStatus.IGNORE
            report.message = "Remote object found, deletion disabled"
            return
        report.operation = ResourceOperation.DELETE
        run_actions(task.actions, "before_delete", profile, entity)
        if rule == MatchingRule.UNASSIGN:
            self.provisioning_manager.unlink(self._assignment(entity, resource_key, PatchOperation.DELETE))
        _check_statuses(self.provisioning_manager.deprovision(entity.kind, entity.key, [resource_key]), resource_key)
        run_actions(task.actions, "after", profile, entity, report)
