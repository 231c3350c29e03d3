"""Conversion between connector objects and internal transfer objects."""
from __future__ import annotations
import logging
from typing import Any, Iterable, Optional

from ..connectors.base import PASSWORD, Attribute, ConnectorObject, GuardedString
from .diff import clean_empty_attrs, diff
from .encryptor import Encryptor
from .errors import MappingError
from .mapping import MappingManager, Provision
from .model import AnyObjectTO, AnyTO, Attr, ConnObjectTO, GroupTO, UserTO, new_any_to
from .password import PasswordGenerator
from .patch import AnyPatch
from .store import AnyStore, RealmStore
from .tasks import PullTask

logger = logging.getLogger(__name__)


def get_password(value: Any) -> Optional[str]:
    """Clear-text value of a connector password attribute value."""
    if value is None:
        return None
    if isinstance(value, GuardedString):
        return value.reveal()
    return str(value)


def get_conn_object_to(fiql: Optional[str], attrs: Iterable[Attribute]) -> ConnObjectTO:
    """Render connector attributes as a ConnObjectTO (password values are left out)."""
    result = ConnObjectTO(fiql=fiql)
    for attr in sorted(attrs, key=lambda a: a.name):
        if attr.name == PASSWORD:
            continue
        values = [str(v) for v in attr.values if v is not None]
        result.attrs.append(Attr(attr.name, values))
    return result


class ConnObjectUtils:
    """Build candidate TOs and patches out of connector objects.

    Args:
        mapping_manager: Mapping manager resolving internal attributes
        any_store: Storage, read for stored password hashes
        realm_store: Realms, read for the password policy chain
        encryptor: Encryptor verifying incoming passwords against stored hashes
        password_generator: Generator for random passwords
    """

    def __init__(
        self,
        mapping_manager: MappingManager,
        any_store: AnyStore,
        realm_store: RealmStore,
        encryptor: Encryptor,
        password_generator: Optional[PasswordGenerator] = None,
    ):
        self.mapping_manager = mapping_manager
        self.any_store = any_store
        self.realm_store = realm_store
        self.encryptor = encryptor
        self.password_generator = password_generator or PasswordGenerator()

    def conn_object_to(self, obj: ConnectorObject, provision: Provision) -> ConnObjectTO:
        """ConnObjectTO for ``obj`` with a ``<key attr>==<value>`` identifier."""
        item = provision.mapping.conn_object_key_item
        fiql = None
        if item is not None:
            attr = obj.get_attribute_by_name(item.ext_attr_name)
            if attr is not None and attr.single_value is not None:
                fiql = f"{item.ext_attr_name}=={attr.single_value}"
        return get_conn_object_to(fiql, obj.all_attributes())

    def get_conn_object_key_value(self, obj: ConnectorObject, provision: Provision) -> str:
        """Value of the connObjectKey item on ``obj``.

        Raises:
            MappingError: No connObjectKey item or no value for it on ``obj``
        """
        item = provision.mapping.conn_object_key_item
        if item is None:
            raise MappingError(f"No connObjectKey mapping item for {provision.any_type}", [provision.any_type])
        attr = obj.get_attribute_by_name(item.ext_attr_name)
        if attr is None or attr.single_value in (None, ""):
            raise MappingError(
                f"No value for connObjectKey attribute {item.ext_attr_name} on {obj.uid}",
                [item.ext_attr_name],
            )
        return str(attr.single_value)

    def build_from_connector_object(
        self,
        obj: ConnectorObject,
        pull_task: PullTask,
        provision: Provision,
        generate_password_if_possible: bool = True,
    ) -> AnyTO:
        """Build the candidate TO for ``obj``.

        Mapping items are applied in declaration order, then the task template
        for the any type; unmapped external attributes are ignored.

        Raises:
            MappingError: connObjectKey value missing, or a mandatory item without value
        """
        self.get_conn_object_key_value(obj, provision)

        to = new_any_to(provision.kind)
        to.type = provision.any_type
        missing = []
        for item in self.mapping_manager.get_pull_items(provision):
            attr = obj.get_attribute_by_name(item.ext_attr_name)
            values = [v for v in attr.values if v is not None] if attr else []
            if not values:
                if item.mandatory_condition:
                    missing.append(item.ext_attr_name)
                continue
            if item.password or item.ext_attr_name == PASSWORD:
                values = [get_password(values[0])]
            self.mapping_manager.set_int_values(item, values, to, provision.kind)
        if missing:
            raise MappingError(f"Mandatory values missing on {obj.uid}: {', '.join(missing)}", missing)

        for aux_class in provision.aux_classes:
            if aux_class not in to.aux_classes:
                to.aux_classes.append(aux_class)

        template = pull_task.templates.get(provision.any_type)
        if template is not None:
            template.apply(to)
        if not to.realm:
            to.realm = pull_task.destination_realm

        if isinstance(to, UserTO) and not to.password and generate_password_if_possible:
            resource = pull_task.resource
            if resource.random_pwd_if_not_provided:
                policies = [realm.password_policy for realm in self.realm_store.ancestors(to.realm)]
                policies.append(resource.password_policy)
                to.password = self.password_generator.generate(policies)

        return to

    def diff_from_connector_object(
        self,
        key: str,
        obj: ConnectorObject,
        original: AnyTO,
        pull_task: PullTask,
        provision: Provision,
    ) -> AnyPatch:
        """Patch bringing ``original`` in line with ``obj``.

        Fields the mapping does not manage are preserved from ``original``,
        the realm is never moved and unchanged passwords are dropped.
        """
        updated = self.build_from_connector_object(obj, pull_task, provision, False)
        updated.key = key
        mapped = {item.int_attr_name for item in self.mapping_manager.get_pull_items(provision)}

        if "status" not in mapped:
            updated.status = original.status

        if isinstance(updated, UserTO):
            self._preserve_user(updated, original, mapped, provision)
        elif isinstance(updated, GroupTO):
            self._preserve_group(updated, original, mapped)
        elif isinstance(updated, AnyObjectTO):
            if not updated.name:
                updated.name = original.name

        patch = diff(updated, original, incremental=True)
        patch.realm = None
        return clean_empty_attrs(patch)

    def _preserve_user(self, updated: UserTO, original: UserTO, mapped: set, provision: Provision) -> None:
        if not updated.username:
            updated.username = original.username

        if not updated.password:
            updated.password = None
        else:
            encoded, cipher = self.any_store.get_password(original.key)
            if cipher and encoded and self.encryptor.verify(updated.password, cipher, encoded):
                updated.password = None

        if "securityQuestion" not in mapped:
            updated.security_question = original.security_question
        if "securityAnswer" not in mapped:
            updated.security_answer = None
        if not self.mapping_manager.has_must_change_password(provision):
            updated.must_change_password = original.must_change_password
        if "suspended" not in mapped:
            updated.suspended = original.suspended

    @staticmethod
    def _preserve_group(updated: GroupTO, original: GroupTO, mapped: set) -> None:
        if not updated.name:
            updated.name = original.name
        if "userOwner" not in mapped:
            updated.user_owner = original.user_owner
        if "groupOwner" not in mapped:
            updated.group_owner = original.group_owner
        updated.udyn_membership_cond = original.udyn_membership_cond
        updated.adyn_membership_conds = dict(original.adyn_membership_conds)
        updated.type_extensions = list(original.type_extensions)

