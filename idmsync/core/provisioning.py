"""Provisioning manager: internal write first, then propagation.

Every operation writes to storage and then propagates to the affected
resources. A propagation failure never rolls the internal write back; it is
reported in the returned :class:`PropagationStatus` list.
"""
from __future__ import annotations
import logging
import threading
from typing import Iterable, List, Optional, Tuple

from .diff import apply_patch
from .encryptor import CipherAlgorithm, Encryptor
from .model import AnyKind, AnyTO, ResourceOperation, UserTO
from .patch import AnyPatch, PatchOperation
from .propagation import PropagationByResource, PropagationManager, PropagationStatus, PropagationTaskExecutor
from .store import AnyStore

logger = logging.getLogger(__name__)


class ProvisioningManager:
    """Create, update, delete and (de)provision entities of every kind.

    Args:
        any_store: Entity storage
        encryptor: Encodes passwords on write
        propagation_manager: Builds propagation tasks
        executor: Runs propagation tasks
        cipher_algorithm: Cipher used to store user passwords
    """

    def __init__(
        self,
        any_store: AnyStore,
        encryptor: Encryptor,
        propagation_manager: PropagationManager,
        executor: PropagationTaskExecutor,
        cipher_algorithm: CipherAlgorithm = CipherAlgorithm.SSHA256,
    ):
        self.any_store = any_store
        self.encryptor = encryptor
        self.propagation_manager = propagation_manager
        self.executor = executor
        self.cipher_algorithm = CipherAlgorithm(cipher_algorithm)

    def _store_password(self, key: str, password: Optional[str]) -> None:
        if password:
            encoded = self.encryptor.encode(password, self.cipher_algorithm)
            self.any_store.set_password(key, encoded, self.cipher_algorithm.value)

    @staticmethod
    def _enable(to: AnyTO) -> Optional[bool]:
        return not to.suspended if isinstance(to, UserTO) else None

    def _propagate(
        self,
        to: AnyTO,
        prop_by_res: PropagationByResource,
        null_priority_async: bool,
        excluded_resources: Iterable[str],
        interrupt: Optional[threading.Event],
        password: Optional[str] = None,
        change_pwd: bool = False,
        password_resources: Optional[Iterable[str]] = None,
    ) -> List[PropagationStatus]:
        tasks = self.propagation_manager.get_tasks(
            to, prop_by_res, password, change_pwd, self._enable(to), excluded_resources, password_resources)
        return self.executor.execute(tasks, null_priority_async, interrupt)

    def create(
        self,
        to: AnyTO,
        null_priority_async: bool = False,
        excluded_resources: Iterable[str] = (),
        interrupt: Optional[threading.Event] = None,
    ) -> Tuple[str, List[PropagationStatus]]:
        """Store ``to`` and create it on its resources.

        Returns:
            Tuple of (new entity key, propagation statuses)
        """
        password = to.password if isinstance(to, UserTO) else None
        stored = self.any_store.insert(to)
        self._store_password(stored.key, password)

        prop_by_res = PropagationByResource()
        prop_by_res.add_all(ResourceOperation.CREATE, stored.resources)
        statuses = self._propagate(stored, prop_by_res, null_priority_async, excluded_resources, interrupt,
                                   password, True)
        return stored.key, statuses

    def update(
        self,
        patch: AnyPatch,
        null_priority_async: bool = False,
        excluded_resources: Iterable[str] = (),
        interrupt: Optional[threading.Event] = None,
    ) -> Tuple[AnyPatch, List[PropagationStatus]]:
        """Apply ``patch`` and propagate the result.

        Resources removed by the patch are deleted from (using the pre-image),
        added ones are created on, the remaining ones are updated.
        """
        original = self.any_store.get(patch.kind, patch.key)
        stored = self.any_store.save(apply_patch(original, patch))

        password = None
        password_resources = None
        if getattr(patch, "password", None) is not None and patch.password.value:
            password = patch.password.value
            password_resources = patch.password.resources or None
            if patch.password.on_storage:
                self._store_password(stored.key, password)

        removed = {item.value for item in patch.resources if item.operation == PatchOperation.DELETE}
        added = {item.value for item in patch.resources if item.operation == PatchOperation.ADD_REPLACE}

        prop_by_res = PropagationByResource()
        prop_by_res.add_all(ResourceOperation.UPDATE, stored.resources - added)
        prop_by_res.add_all(ResourceOperation.CREATE, added & stored.resources)
        for resource_key in prop_by_res.get(ResourceOperation.UPDATE):
            resource = self.propagation_manager.resources.get(resource_key)
            provision = resource.get_provision_by_kind(stored.kind) if resource else None
            if provision is None:
                continue
            mapping_manager = self.propagation_manager.mapping_manager
            old_key = mapping_manager.get_conn_object_key_value(original, provision)
            new_key = mapping_manager.get_conn_object_key_value(stored, provision)
            if old_key and old_key != new_key:
                prop_by_res.old_conn_object_keys[resource_key] = old_key

        statuses = self._propagate(stored, prop_by_res, null_priority_async, excluded_resources, interrupt,
                                   password, password is not None, password_resources)

        deleted = PropagationByResource()
        deleted.add_all(ResourceOperation.DELETE, removed & original.resources)
        if not deleted.is_empty():
            statuses += self._propagate(original, deleted, null_priority_async, excluded_resources, interrupt)

        return patch, statuses

    def delete(
        self,
        kind: AnyKind,
        key: str,
        null_priority_async: bool = False,
        excluded_resources: Iterable[str] = (),
        interrupt: Optional[threading.Event] = None,
    ) -> List[PropagationStatus]:
        """Remove the entity from its resources, then from storage."""
        original = self.any_store.get(kind, key)
        prop_by_res = PropagationByResource()
        prop_by_res.add_all(ResourceOperation.DELETE, original.resources)
        statuses = self._propagate(original, prop_by_res, null_priority_async, excluded_resources, interrupt)
        self.any_store.delete(kind, key)
        return statuses

    def link(self, patch: AnyPatch) -> str:
        """Apply resource assignments without propagating."""
        original = self.any_store.get(patch.kind, patch.key)
        return self.any_store.save(apply_patch(original, patch)).key

    def unlink(self, patch: AnyPatch) -> str:
        """Remove resource assignments without propagating."""
        original = self.any_store.get(patch.kind, patch.key)
        return self.any_store.save(apply_patch(original, patch)).key

    def provision(
        self,
        kind: AnyKind,
        key: str,
        resources: Iterable[str],
        change_pwd: bool = False,
        password: Optional[str] = None,
        null_priority_async: bool = False,
    ) -> List[PropagationStatus]:
        """Create or update the entity on ``resources`` without assigning them."""
        to = self.any_store.get(kind, key)
        prop_by_res = PropagationByResource()
        prop_by_res.add_all(ResourceOperation.UPDATE, resources)
        return self._propagate(to, prop_by_res, null_priority_async, (), None, password, change_pwd)

    def deprovision(
        self,
        kind: AnyKind,
        key: str,
        resources: Iterable[str],
        null_priority_async: bool = False,
    ) -> List[PropagationStatus]:
        """Delete the entity from ``resources`` without unassigning them."""
        to = self.any_store.get(kind, key)
        prop_by_res = PropagationByResource()
        prop_by_res.add_all(ResourceOperation.DELETE, resources)
        return self._propagate(to, prop_by_res, null_priority_async, (), None)
