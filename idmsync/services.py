"""Service container wiring storage, connectors, managers and logics.

Usage:
    services = Services.from_settings(load_settings())
    execution = services.task_logic.execute(AuthContext.admin(), "hr-pull")
    services.shutdown()
"""
from __future__ import annotations
import logging
from concurrent.futures import Future
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config.registry import Registry
from .config.settings import AppConfig
from .connectors import ConnectorFactory, default_factory
from .core.actions import DBPasswordPullActions, MembershipPullActions
from .core.conn_object import ConnObjectUtils
from .core.correlation import CorrelationRuleRegistry
from .core.encryptor import CipherAlgorithm, Encryptor
from .core.jobs import JobRunner
from .core.logic import AnyLogic, GroupLogic, RemediationLogic, ResourceLogic, TaskLogic
from .core.mapping import MappingManager
from .core.memberships import SetUMembershipsJob
from .core.model import AnyKind
from .core.password import PasswordGenerator
from .core.propagation import PropagationManager, PropagationTaskExecutor
from .core.provisioning import ProvisioningManager
from .core.pull import PullExecutor
from .core.push import PushExecutor
from .core.store import AnyStore, RealmStore, RemediationStore

logger = logging.getLogger(__name__)


class Services:
    """Everything one running instance needs, built from a :class:`Registry`.

    Args:
        registry: Declared schemas, realms, resources and tasks
        cipher_key: Secret used by the encryptor for reversible ciphers
        default_cipher: Cipher used to store user passwords
        propagation_workers: Threads of the background job runner
        null_priority_async: Pull/push propagate to non-priority resources in background
        connector_factory: Connector factory, the bundled one when not given
    """

    def __init__(
        self,
        registry: Registry,
        cipher_key: str,
        default_cipher: str = "SSHA256",
        propagation_workers: int = 4,
        null_priority_async: bool = False,
        connector_factory: Optional[ConnectorFactory] = None,
    ):
        self.registry = registry
        self.resources = registry.resources

        # Storage
        self.any_store = AnyStore()
        self.realm_store = RealmStore(registry.realms)
        self.remediation_store = RemediationStore()

        # Infrastructure
        self.connector_factory = connector_factory or default_factory()
        self.job_runner = JobRunner(propagation_workers)
        self.encryptor = Encryptor(cipher_key)

        # Mapping and provisioning
        self.mapping_manager = MappingManager(registry.schema_registry)
        self.conn_object_utils = ConnObjectUtils(
            self.mapping_manager, self.any_store, self.realm_store, self.encryptor, PasswordGenerator())
        self.correlation_rules = CorrelationRuleRegistry(self.mapping_manager)
        self.propagation_manager = PropagationManager(self.mapping_manager, self.resources)
        self.propagation_executor = PropagationTaskExecutor(self.connector_factory, self.job_runner)
        self.provisioning_manager = ProvisioningManager(
            self.any_store, self.encryptor, self.propagation_manager, self.propagation_executor,
            CipherAlgorithm(default_cipher))

        # Reconciliation
        self.pull_executor = PullExecutor(
            self.connector_factory, self.conn_object_utils, self.correlation_rules, self.any_store,
            self.provisioning_manager, self.remediation_store, null_priority_async)
        self.push_executor = PushExecutor(
            self.connector_factory, self.mapping_manager, self.any_store, self.provisioning_manager)
        self.memberships_job = SetUMembershipsJob(self.provisioning_manager.update)

        self.action_factories: Dict[str, Callable[[], Any]] = {
            "dbPassword": DBPasswordPullActions,
            "memberships": lambda: MembershipPullActions(self.schedule_memberships),
        }

        # Logic
        self.logics: Dict[AnyKind, AnyLogic] = {
            AnyKind.USER: AnyLogic(AnyKind.USER, self.any_store, self.realm_store, self.provisioning_manager),
            AnyKind.GROUP: GroupLogic(self.any_store, self.realm_store, self.provisioning_manager),
            AnyKind.ANY_OBJECT: AnyLogic(
                AnyKind.ANY_OBJECT, self.any_store, self.realm_store, self.provisioning_manager),
        }
        self.remediation_logic = RemediationLogic(self.remediation_store, self.any_store, self.logics)
        self.resource_logic = ResourceLogic(
            self.resources, self.connector_factory, self.conn_object_utils, self.any_store)
        self.task_logic = TaskLogic(
            registry.pull_tasks, registry.push_tasks, self.build_actions,
            self.pull_executor, self.push_executor, self.job_runner)

    @classmethod
    def from_settings(cls, settings: AppConfig, connector_factory: Optional[ConnectorFactory] = None) -> "Services":
        return cls(
            Registry.load(settings.resources_file),
            settings.cipher_key,
            settings.default_cipher,
            settings.propagation_workers,
            settings.null_priority_async,
            connector_factory,
        )

    def schedule_memberships(self, before: Dict[str, Iterable[str]], after: Dict[str, Iterable[str]]) -> Future:
        """Queue the set-memberships job on the background runner."""
        logger.info(f"Scheduling memberships job for {len(set(before) | set(after))} user(s)")
        return self.job_runner.submit(self.memberships_job.run, before, after)

    def build_actions(self, task_key: str) -> List[Any]:
        """Fresh action instances for ``task_key``, in declaration order.

        Raises:
            RuntimeError: An action name is not known
        """
        actions = []
        for name in self.registry.task_actions.get(task_key, []):
            factory = self.action_factories.get(name)
            if factory is None:
                raise RuntimeError(f"Unknown action {name} on task {task_key}")
            actions.append(factory())
        return actions

    def register_action(self, name: str, factory: Callable[[], Any]) -> None:
        self.action_factories[name] = factory

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background runner, waiting for queued jobs by default."""
        self.job_runner.shutdown(wait=wait)
