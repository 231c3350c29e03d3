"""Correlation rules: find the internal entity an external object belongs to.

A rule turns a connector object into a :class:`SearchCond` over internal
storage; :func:`correlate` runs it and classifies the outcome as NONE, ONE
or MANY. MANY is never resolved by picking one of the candidates.
"""
from __future__ import annotations
import abc
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..connectors.base import ConnectorObject
from .errors import AmbiguousCorrelationError, MappingError
from .mapping import Accessor, MappingItem, MappingManager, Provision
from .model import AnyTO, new_any_to
from .store import AnyStore

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Search conditions
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class SearchCond:
    """Equality on one internal attribute, optionally AND-ed with others."""
    name: Optional[str] = None
    value: Optional[str] = None
    accessor: Optional[Accessor] = field(default=None, repr=False)
    and_conds: List["SearchCond"] = field(default_factory=list)

    @classmethod
    def all_of(cls, conds: List["SearchCond"]) -> "SearchCond":
        return cls(and_conds=list(conds))

    def matches(self, to: AnyTO) -> bool:
        if self.and_conds:
            return all(cond.matches(to) for cond in self.and_conds)
        if self.accessor is None:
            return False
        return self.value in self.accessor.get(to)

    def __str__(self) -> str:
        if self.and_conds:
            return ";".join(str(cond) for cond in self.and_conds)
        return f"{self.name}=={self.value}"


def _cond_for(mapping_manager: MappingManager, item: MappingItem, obj: ConnectorObject,
              provision: Provision) -> SearchCond:
    attr = obj.get_attribute_by_name(item.ext_attr_name)
    if attr is None or attr.single_value in (None, ""):
        raise MappingError(f"No value for {item.ext_attr_name} on {obj.uid}", [item.ext_attr_name])
    accessor = mapping_manager.accessor(item, provision.kind)
    values = [str(attr.single_value)]
    # Run the pull transformers so the value compares the way it would be stored
    probe = new_any_to(provision.kind)
    mapping_manager.set_int_values(item, values, probe, provision.kind)
    stored = accessor.get(probe)
    return SearchCond(item.int_attr_name, stored[0] if stored else values[0], accessor)


# ─────────────────────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────────────────────
class CorrelationRule(abc.ABC):
    """Pure function from an external object to a search condition."""

    def __init__(self, mapping_manager: MappingManager, conf: Optional[Dict[str, Any]] = None):
        self.mapping_manager = mapping_manager
        self.conf = dict(conf or {})

    @abc.abstractmethod
    def get_search_cond(self, obj: ConnectorObject, provision: Provision) -> SearchCond:
        """Build the condition selecting the candidates for ``obj``."""


class DefaultCorrelationRule(CorrelationRule):
    """Match on the mapping's connObjectKey item."""

    def get_search_cond(self, obj: ConnectorObject, provision: Provision) -> SearchCond:
        item = provision.mapping.conn_object_key_item
        if item is None:
            raise MappingError(f"No connObjectKey mapping item for {provision.any_type}", [provision.any_type])
        return _cond_for(self.mapping_manager, item, obj, provision)


class AttributeCorrelationRule(CorrelationRule):
    """Match on every internal attribute listed in ``conf["schemas"]``."""

    def get_search_cond(self, obj: ConnectorObject, provision: Provision) -> SearchCond:
        schemas = self.conf.get("schemas") or []
        if not schemas:
            raise MappingError(f"No schemas configured for correlation of {provision.any_type}")

        conds = []
        for schema in schemas:
            item = next(
                (i for i in self.mapping_manager.get_pull_items(provision) if i.int_attr_name == schema),
                None,
            )
            if item is None:
                raise MappingError(f"Correlation schema {schema} is not mapped for {provision.any_type}", [schema])
            conds.append(_cond_for(self.mapping_manager, item, obj, provision))
        return SearchCond.all_of(conds)


RuleFactory = Callable[[MappingManager, Dict[str, Any]], CorrelationRule]


class CorrelationRuleRegistry:
    """Correlation rule implementations by name, built once at startup."""

    def __init__(self, mapping_manager: MappingManager):
        self.mapping_manager = mapping_manager
        self._factories: Dict[str, RuleFactory] = {
            "default": DefaultCorrelationRule,
            "attributes": AttributeCorrelationRule,
        }

    def register(self, name: str, factory: RuleFactory) -> None:
        self._factories[name] = factory

    def get(self, provision: Provision) -> CorrelationRule:
        name = provision.correlation_rule or "default"
        factory = self._factories.get(name)
        if factory is None:
            raise MappingError(f"Unknown correlation rule '{name}'", [name])
        return factory(self.mapping_manager, provision.correlation_conf)


# ─────────────────────────────────────────────────────────────────────────────
# Outcome
# ─────────────────────────────────────────────────────────────────────────────
class CorrelationOutcome(str, Enum):
    NONE = "NONE"
    ONE = "ONE"
    MANY = "MANY"


@dataclass
class CorrelationResult:
    outcome: CorrelationOutcome
    matches: List[AnyTO] = field(default_factory=list)
    cond: Optional[SearchCond] = None

    @property
    def match(self) -> Optional[AnyTO]:
        """The single match; raises on an ambiguous outcome."""
        if self.outcome == CorrelationOutcome.MANY:
            keys = [m.key for m in self.matches]
            raise AmbiguousCorrelationError(
                f"{len(keys)} entities match {self.cond}: {', '.join(keys)}", keys)
        return self.matches[0] if self.matches else None


def correlate(
    store: AnyStore,
    rule: CorrelationRule,
    obj: ConnectorObject,
    provision: Provision,
) -> CorrelationResult:
    """Run ``rule`` for ``obj`` against ``store``."""
    cond = rule.get_search_cond(obj, provision)
    matches = store.search(provision.kind, cond.matches)
    if not matches:
        outcome = CorrelationOutcome.NONE
    elif len(matches) == 1:
        outcome = CorrelationOutcome.ONE
    else:
        outcome = CorrelationOutcome.MANY
        logger.warning(f"Ambiguous correlation for {obj.uid} on {cond}: {[m.key for m in matches]}")
    return CorrelationResult(outcome, matches, cond)
