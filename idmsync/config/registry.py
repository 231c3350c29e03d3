"""YAML registry of schemas, realms, password policies, resources and tasks.

The registry file is read once at startup; every mapping is bound to the
schema registry while loading, so a bad internal attribute name fails here.

Example::

    schemas:
      plain: [firstname, surname, email]
      derived: {fullname: "{firstname} {surname}"}
    policies:
      password:
        strong: {minLength: 10, uppercase: 1, digit: 1}
    realms:
      - path: /employees
        passwordPolicy: strong
    resources:
      ldap:
        connector: memory
        propagationPriority: 1
        provisions:
          - anyType: USER
            objectClass: __ACCOUNT__
            mapping:
              - {intAttrName: username, extAttrName: uid, connObjectKey: true}
    tasks:
      pull:
        ldap-pull: {resource: ldap, destinationRealm: /employees, actions: [memberships]}
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..connectors.base import ConnInstance
from ..core.errors import MappingError
from ..core.mapping import ExternalResource, Mapping, MappingItem, MappingPurpose, Provision, SchemaRegistry
from ..core.model import AnyKind
from ..core.password import PasswordPolicy
from ..core.store import Realm
from ..core.tasks import MatchingRule, PullTask, PushTask, UnmatchingRule
from ..core.templates import AnyTemplate

logger = logging.getLogger(__name__)

_POLICY_FIELDS = {
    "minLength": "min_length",
    "maxLength": "max_length",
    "uppercase": "uppercase",
    "lowercase": "lowercase",
    "digit": "digit",
    "special": "special",
}


def _kind(any_type: str, declared: Optional[str] = None) -> AnyKind:
    if declared:
        return AnyKind(declared.upper())
    if any_type in (AnyKind.USER.value, AnyKind.GROUP.value):
        return AnyKind(any_type)
    return AnyKind.ANY_OBJECT


@dataclass
class Registry:
    """Everything declared in the registry file.

    Task actions are kept by name in ``task_actions``; instances are built
    per run by the service container.
    """
    schema_registry: SchemaRegistry = field(default_factory=SchemaRegistry)
    password_policies: Dict[str, PasswordPolicy] = field(default_factory=dict)
    realms: List[Realm] = field(default_factory=list)
    resources: Dict[str, ExternalResource] = field(default_factory=dict)
    pull_tasks: Dict[str, PullTask] = field(default_factory=dict)
    push_tasks: Dict[str, PushTask] = field(default_factory=dict)
    task_actions: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def load(cls, path: str | Path) -> "Registry":
        """Load the registry from a YAML file.

        Raises:
            RuntimeError: The file is missing or is not a YAML mapping
            MappingError: A mapping refers to an unknown schema or transformer
        """
        path = Path(path)
        if not path.is_file():
            raise RuntimeError(f"Registry file {path} not found")
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise RuntimeError(f"Registry file {path} must contain a mapping")
        registry = cls.from_dict(data)
        print(f"[registry] Loaded {len(registry.resources)} resource(s), "
              f"{len(registry.pull_tasks)} pull task(s), {len(registry.push_tasks)} push task(s) from {path}")
        return registry

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Registry":
        schemas = data.get("schemas") or {}
        registry = cls(schema_registry=SchemaRegistry(
            plain=schemas.get("plain") or [],
            derived=schemas.get("derived") or {},
            virtual=schemas.get("virtual") or [],
        ))

        for name, conf in ((data.get("policies") or {}).get("password") or {}).items():
            registry.password_policies[name] = cls._password_policy(name, conf or {})

        for conf in data.get("realms") or []:
            registry.realms.append(Realm(conf["path"], registry._policy_ref(conf.get("passwordPolicy"))))

        for key, conf in (data.get("resources") or {}).items():
            registry.resources[key] = registry._resource(key, conf or {})

        tasks = data.get("tasks") or {}
        for key, conf in (tasks.get("pull") or {}).items():
            registry.pull_tasks[key] = registry._pull_task(key, conf or {})
        for key, conf in (tasks.get("push") or {}).items():
            registry.push_tasks[key] = registry._push_task(key, conf or {})

        return registry

    # ─────────────────────────────────────────────────────────────────────────
    # Parsers
    # ─────────────────────────────────────────────────────────────────────────
    @staticmethod
    def _password_policy(name: str, conf: Dict[str, Any]) -> PasswordPolicy:
        unknown = set(conf) - set(_POLICY_FIELDS)
        if unknown:
            raise RuntimeError(f"Unknown password policy rule(s) in {name}: {', '.join(sorted(unknown))}")
        return PasswordPolicy(key=name, **{_POLICY_FIELDS[k]: int(v) for k, v in conf.items()})

    def _policy_ref(self, name: Optional[str]) -> Optional[PasswordPolicy]:
        if not name:
            return None
        if name not in self.password_policies:
            raise RuntimeError(f"Password policy {name} is not declared")
        return self.password_policies[name]

    def _resource(self, key: str, conf: Dict[str, Any]) -> ExternalResource:
        resource = ExternalResource(
            key=key,
            conn_instance=ConnInstance(conf.get("connector", "memory"), dict(conf.get("config") or {})),
            propagation_priority=conf.get("propagationPriority"),
            priority_abort=bool(conf.get("priorityAbort", False)),
            random_pwd_if_not_provided=bool(conf.get("randomPwdIfNotProvided", False)),
            password_policy=self._policy_ref(conf.get("passwordPolicy")),
            enforce_mandatory_condition=bool(conf.get("enforceMandatoryCondition", True)),
        )
        for provision_conf in conf.get("provisions") or []:
            provision = self._provision(key, provision_conf)
            if resource.get_provision(provision.any_type) is not None:
                raise MappingError(f"Duplicate provision for {provision.any_type} on {key}", [provision.any_type])
            resource.provisions.append(self.schema_registry.bind(provision))
        return resource

    @staticmethod
    def _provision(resource_key: str, conf: Dict[str, Any]) -> Provision:
        any_type = conf.get("anyType")
        if not any_type:
            raise RuntimeError(f"Provision without anyType on resource {resource_key}")
        items = [
            MappingItem(
                int_attr_name=item["intAttrName"],
                ext_attr_name=item["extAttrName"],
                purpose=MappingPurpose(item.get("purpose", "BOTH")),
                conn_object_key=bool(item.get("connObjectKey", False)),
                password=bool(item.get("password", False)),
                mandatory_condition=bool(item.get("mandatory", False)),
                transformers=list(item.get("transformers") or []),
            )
            for item in conf.get("mapping") or []
        ]
        return Provision(
            any_type=any_type,
            kind=_kind(any_type, conf.get("kind")),
            object_class=conf.get("objectClass", "__ACCOUNT__"),
            mapping=Mapping(items),
            aux_classes=list(conf.get("auxClasses") or []),
            correlation_rule=conf.get("correlationRule"),
            correlation_conf=dict(conf.get("correlationConf") or {}),
        )

    def _task_resource(self, task_key: str, conf: Dict[str, Any]) -> ExternalResource:
        resource_key = conf.get("resource")
        if resource_key not in self.resources:
            raise RuntimeError(f"Task {task_key} refers to unknown resource {resource_key}")
        self.task_actions[task_key] = list(conf.get("actions") or [])
        return self.resources[resource_key]

    def _pull_task(self, key: str, conf: Dict[str, Any]) -> PullTask:
        resource = self._task_resource(key, conf)
        templates = {
            any_type: AnyTemplate(_kind(any_type), dict(template or {}))
            for any_type, template in (conf.get("templates") or {}).items()
        }
        return PullTask(
            key=key,
            resource=resource,
            destination_realm=conf.get("destinationRealm", "/"),
            templates=templates,
            perform_create=bool(conf.get("performCreate", True)),
            perform_update=bool(conf.get("performUpdate", True)),
            perform_delete=bool(conf.get("performDelete", False)),
            matching_rule=MatchingRule(conf.get("matchingRule", "UPDATE")),
            unmatching_rule=UnmatchingRule(conf.get("unmatchingRule", "PROVISION")),
            remediation=bool(conf.get("remediation", False)),
            page_size=int(conf.get("pageSize", 100)),
        )

    def _push_task(self, key: str, conf: Dict[str, Any]) -> PushTask:
        return PushTask(
            key=key,
            resource=self._task_resource(key, conf),
            source_realm=conf.get("sourceRealm", "/"),
            perform_create=bool(conf.get("performCreate", True)),
            perform_update=bool(conf.get("performUpdate", True)),
            perform_delete=bool(conf.get("performDelete", True)),
            matching_rule=MatchingRule(conf.get("matchingRule", "LINK")),
            unmatching_rule=UnmatchingRule(conf.get("unmatchingRule", "ASSIGN")),
        )
