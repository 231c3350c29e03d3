"""Pull: reconcile the objects of an external resource into internal storage.

For every provision of the task resource (groups first), each remote object
is correlated to the internal entities and then created, updated, linked,
unlinked or ignored according to the task rules. Records are processed one
at a time; a record that fails is reported (and optionally turned into a
remediation) while the run goes on. Infrastructure errors abort the run.
"""
from __future__ import annotations
import logging
import threading
from typing import Any, List, Optional, Set

from scripts import audit

from ..connectors.base import ConnectorFactory, ConnectorObject
from ..connectors.exceptions import ConnectorError
from .actions import ProvisioningProfile, run_actions
from .conn_object import ConnObjectUtils
from .correlation import CorrelationRuleRegistry, correlate
from .errors import AmbiguousCorrelationError, IdmError, IgnoreProvisionError, JobExecutionError
from .mapping import Provision
from .model import AnyKind, AnyTO, ResourceOperation, etag_of
from .patch import PatchOperation, StringPatchItem, new_patch
from .provisioning import ProvisioningManager
from .store import AnyStore, Remediation, RemediationStore, now
from .tasks import ExecutionStatus, MatchingRule, ProvisioningReport, PullTask, ReportStatus, TaskExecution, UnmatchingRule

logger = logging.getLogger(__name__)

_KIND_ORDER = {AnyKind.GROUP: 0, AnyKind.USER: 1, AnyKind.ANY_OBJECT: 2}


class _Record:
    """What is known about the record being processed, for reports and remediations."""

    def __init__(self, provision: Provision, obj: ConnectorObject):
        self.report = ProvisioningReport(provision.any_type, ResourceOperation.NONE, name=obj.name, uid=obj.uid)
        self.payload: Any = None
        self.entity: Optional[AnyTO] = None
        # Keys correlation pointed at; None until correlation has finished
        self.candidates: Optional[List[str]] = None

    def seen_keys(self) -> Set[str]:
        keys = set(self.candidates or ())
        if self.entity is not None:
            keys.add(self.entity.key)
        if self.report.key:
            keys.add(self.report.key)
        return keys


class PullExecutor:
    """Run pull tasks.

    Args:
        connector_factory: Factory providing the task resource connector
        conn_object_utils: Builds candidate TOs and patches
        correlation_rules: Correlation rule per provision
        any_store: Entity storage
        provisioning_manager: Writes and propagates
        remediation_store: Where failed records are recorded
        null_priority_async: Propagate to non-priority resources in background
    """

    def __init__(
        self,
        connector_factory: ConnectorFactory,
        conn_object_utils: ConnObjectUtils,
        correlation_rules: CorrelationRuleRegistry,
        any_store: AnyStore,
        provisioning_manager: ProvisioningManager,
        remediation_store: RemediationStore,
        null_priority_async: bool = False,
    ):
        self.connector_factory = connector_factory
        self.conn_object_utils = conn_object_utils
        self.correlation_rules = correlation_rules
        self.any_store = any_store
        self.provisioning_manager = provisioning_manager
        self.remediation_store = remediation_store
        self.null_priority_async = null_priority_async

    def execute(self, task: PullTask, interrupt: Optional[threading.Event] = None,
                who: str = "system") -> TaskExecution:
        """Run ``task`` and return its execution report."""
        execution = TaskExecution(task.key, start=now())
        logger.info(f"Pull task {task.key} started on {task.resource.key}")
        try:
            try:
                connector = self.connector_factory.get_connector(task.resource)
            except ConnectorError as e:
                raise JobExecutionError(f"Connector for {task.resource.key} unavailable: {e}") from e

            profile = ProvisioningProfile(task, connector, self.any_store, execution.reports)
            run_actions(task.actions, "before_all", profile)

            for provision in sorted(task.resource.provisions, key=lambda p: _KIND_ORDER[p.kind]):
                self._pull_provision(profile, provision, interrupt)
                if interrupt is not None and interrupt.is_set():
                    logger.info(f"Pull task {task.key} interrupted")
                    break

            run_actions(task.actions, "after_all", profile)
        except (JobExecutionError, ConnectorError) as e:
            logger.error(f"Pull task {task.key} aborted: {e}")
            execution.status = ExecutionStatus.FAILURE
            execution.message = str(e)
        finally:
            execution.end = now()

        audit.safe_log_audit_event(
            "TASK", "pull", task.key,
            result="SUCCESS" if execution.status == ExecutionStatus.SUCCESS else "FAILURE",
            who=who, key=task.key, output=execution.summary(),
        )
        logger.info(f"Pull task {task.key} finished: {execution.summary()}")
        return execution

    def _pull_provision(self, profile: ProvisioningProfile, provision: Provision,
                        interrupt: Optional[threading.Event]) -> None:
        task: PullTask = profile.task
        seen: Set[str] = set()
        uncorrelated: List[str] = []

        def handler(obj: ConnectorObject) -> bool:
            if interrupt is not None and interrupt.is_set():
                return False
            record = self._handle(profile, provision, obj)
            seen.update(record.seen_keys())
            if record.candidates is None and record.report.status == ReportStatus.FAILURE:
                uncorrelated.append(obj.uid)
            return True

        cookie = None
        while True:
            result = profile.connector.search(provision.object_class, None, handler, task.page_size, cookie)
            cookie = result.paged_results_cookie
            if not cookie or (interrupt is not None and interrupt.is_set()):
                break

        if not task.perform_delete or (interrupt is not None and interrupt.is_set()):
            return
        if uncorrelated:
            # Any stored entity may belong to one of these records
            logger.warning(f"Pull task {task.key}: skipping deletions for {provision.any_type}, "
                           f"{len(uncorrelated)} record(s) could not be correlated: {', '.join(uncorrelated)}")
            return
        self._delete_missing(profile, provision, seen)

    # ─────────────────────────────────────────────────────────────────────────
    # One record
    # ─────────────────────────────────────────────────────────────────────────
    def _handle(self, profile: ProvisioningProfile, provision: Provision, obj: ConnectorObject) -> _Record:
        """Process one remote object and return what was learned about it."""
        task: PullTask = profile.task
        record = _Record(provision, obj)
        try:
            rule = self.correlation_rules.get(provision)
            try:
                match = correlate(self.any_store, rule, obj, provision).match
            except AmbiguousCorrelationError as e:
                record.candidates = list(e.matches)
                raise
            record.candidates = [match.key] if match is not None else []
            if match is None:
                self._unmatched(profile, provision, obj, record)
            else:
                record.entity = match
                self._matched(profile, provision, obj, match, record)
        except IgnoreProvisionError as e:
            self._ignore(profile, obj, record, e)
        except JobExecutionError:
            raise
        except IdmError as e:
            self._fail(profile, provision, obj, record, e)

        profile.results.append(record.report)
        audit.safe_log_audit_event(
            "PULL", task.resource.key, record.report.operation.value.lower(),
            result="FAILURE" if record.report.status == ReportStatus.FAILURE else "SUCCESS",
            key=record.report.key,
            before=record.entity.to_dict() if record.entity is not None else None,
            output=record.report.to_dict(),
        )
        return record

    def _ignore(self, profile: ProvisioningProfile, obj: ConnectorObject, record: _Record,
                error: IgnoreProvisionError) -> None:
        """Report a vetoed record and let every action drop its per-record state."""
        record.report.status = ReportStatus.IGNORE
        record.report.message = error.message
        try:
            run_actions(profile.task.actions, "on_error", profile, obj, record.report, error)
        except IdmError as e:
            logger.error(f"on_error hook failed for {obj.uid}: {e.message}")

    def _fail(self, profile: ProvisioningProfile, provision: Provision, obj: ConnectorObject,
              record: _Record, error: IdmError) -> None:
        task: PullTask = profile.task
        report = record.report
        report.status = ReportStatus.FAILURE
        report.message = error.message
        logger.warning(f"Pull of {obj.uid} from {task.resource.key} failed: {error.message}")

        try:
            run_actions(task.actions, "on_error", profile, obj, report, error)
        except IdmError as e:
            logger.error(f"on_error hook failed for {obj.uid}: {e.message}")

        if not task.remediation:
            return

        if isinstance(error, AmbiguousCorrelationError):
            report.operation = ResourceOperation.CREATE
            try:
                record.payload = self.conn_object_utils.build_from_connector_object(obj, task, provision, False)
            except IdmError as e:
                logger.debug(f"No candidate for remediation of {obj.uid}: {e.message}")

        operation = report.operation if report.operation != ResourceOperation.NONE else (
            ResourceOperation.UPDATE if record.entity is not None else ResourceOperation.CREATE)
        entity_key = record.entity.key if record.entity is not None else None
        if operation == ResourceOperation.DELETE:
            record.payload = entity_key

        remediation = Remediation(
            any_type=provision.any_type,
            operation=operation,
            payload=record.payload,
            error=error.message,
            remote_name=obj.name,
            pull_task=task.key,
            entity_key=entity_key,
            etag=etag_of(record.entity) if record.entity is not None else None,
        )
        self.remediation_store.save(remediation)
        logger.info(f"Remediation {remediation.key} created for {obj.uid}")

    def _unmatched(self, profile: ProvisioningProfile, provision: Provision, obj: ConnectorObject,
                   record: _Record) -> None:
        task: PullTask = profile.task
        report = record.report
        rule = task.unmatching_rule

        if rule in (UnmatchingRule.IGNORE, UnmatchingRule.UNLINK):
            report.status = ReportStatus.IGNORE
            report.message = f"No match, unmatching rule {rule.value}"
            return
        if not task.perform_create:
            report.status = ReportStatus.IGNORE
            report.message = "No match, creation disabled"
            return

        report.operation = ResourceOperation.CREATE
        to = self.conn_object_utils.build_from_connector_object(obj, task, provision, True)
        record.payload = to
        if rule == UnmatchingRule.ASSIGN:
            to.resources.add(task.resource.key)
            run_actions(task.actions, "before_assign", profile, obj, to)
        else:
            run_actions(task.actions, "before_provision", profile, obj, to)

        key, statuses = self.provisioning_manager.create(
            to, self.null_priority_async, excluded_resources={task.resource.key})
        entity = self.any_store.get(provision.kind, key)
        report.key = key
        report.name = entity.display_name
        run_actions(task.actions, "after", profile, obj, entity, report)

    def _matched(self, profile: ProvisioningProfile, provision: Provision, obj: ConnectorObject,
                 match: AnyTO, record: _Record) -> None:
        task: PullTask = profile.task
        report = record.report
        report.key = match.key
        report.name = match.display_name
        rule = task.matching_rule

        if rule == MatchingRule.IGNORE or (rule == MatchingRule.UPDATE and not task.perform_update):
            report.status = ReportStatus.IGNORE
            report.message = f"Matched, matching rule {rule.value}"
            return

        if rule in (MatchingRule.LINK, MatchingRule.UNLINK):
            report.operation = ResourceOperation.UPDATE
            link = rule == MatchingRule.LINK
            run_actions(task.actions, "before_link" if link else "before_unlink", profile, obj, match)
            patch = new_patch(provision.kind, match.key)
            patch.resources = [StringPatchItem(
                task.resource.key, PatchOperation.ADD_REPLACE if link else PatchOperation.DELETE)]
            record.payload = patch
            if link:
                self.provisioning_manager.link(patch)
            else:
                self.provisioning_manager.unlink(patch)
            run_actions(task.actions, "after", profile, obj, self.any_store.get(provision.kind, match.key), report)
            return

        if rule != MatchingRule.UPDATE:
            report.status = ReportStatus.IGNORE
            report.message = f"Matching rule {rule.value} does not apply to pull"
            return

        report.operation = ResourceOperation.UPDATE
        patch = self.conn_object_utils.diff_from_connector_object(match.key, obj, match, task, provision)
        record.payload = patch
        run_actions(task.actions, "before_update", profile, obj, match, patch)

        if patch.is_empty():
            report.operation = ResourceOperation.NONE
            report.message = "Already in sync"
        else:
            self.provisioning_manager.update(patch, self.null_priority_async, excluded_resources={task.resource.key})
        run_actions(task.actions, "after", profile, obj, self.any_store.get(provision.kind, match.key), report)

    # ─────────────────────────────────────────────────────────────────────────
    # Deletions
    # ─────────────────────────────────────────────────────────────────────────
    def _delete_missing(self, profile: ProvisioningProfile, provision: Provision, seen: Set[str]) -> None:
        """Delete entities assigned to the resource whose remote object is gone."""
        task: PullTask = profile.task
        stale: List[AnyTO] = self.any_store.search(
            provision.kind, lambda to: task.resource.key in to.resources and to.key not in seen)

        for entity in stale:
            obj = ConnectorObject(provision.object_class, entity.key, entity.display_name or entity.key)
            record = _Record(provision, obj)
            record.entity = entity
            record.report.key = entity.key
            record.report.operation = ResourceOperation.DELETE
            try:
                run_actions(task.actions, "before_delete", profile, obj, entity)
                self.provisioning_manager.delete(
                    provision.kind, entity.key, self.null_priority_async, excluded_resources={task.resource.key})
                run_actions(task.actions, "after", profile, obj, None, record.report)
            except IgnoreProvisionError as e:
                self._ignore(profile, obj, record, e)
            except JobExecutionError:
                raise
            except IdmError as e:
                self._fail(profile, provision, obj, record, e)
            profile.results.append(record.report)
