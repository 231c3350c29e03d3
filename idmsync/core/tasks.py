"""Pull and push task definitions and the reports their runs produce."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .mapping import ExternalResource
from .model import ResourceOperation
from .templates import AnyTemplate


class MatchingRule(str, Enum):
    """What to do when the remote object matches an internal entity."""
    UPDATE = "UPDATE"
    DEPROVISION = "DEPROVISION"
    UNASSIGN = "UNASSIGN"
    LINK = "LINK"
    UNLINK = "UNLINK"
    IGNORE = "IGNORE"


class UnmatchingRule(str, Enum):
    """What to do when no internal entity matches."""
    PROVISION = "PROVISION"
    ASSIGN = "ASSIGN"
    UNLINK = "UNLINK"
    IGNORE = "IGNORE"


class ReportStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    IGNORE = "IGNORE"


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass
class PullTask:
    key: str
    resource: ExternalResource
    destination_realm: str = "/"
    templates: Dict[str, AnyTemplate] = field(default_factory=dict)
    actions: List[Any] = field(default_factory=list)
    perform_create: bool = True
    perform_update: bool = True
    perform_delete: bool = False
    matching_rule: MatchingRule = MatchingRule.UPDATE
    unmatching_rule: UnmatchingRule = UnmatchingRule.PROVISION
    remediation: bool = False
    page_size: int = 100


@dataclass
class PushTask:
    key: str
    resource: ExternalResource
    source_realm: str = "/"
    actions: List[Any] = field(default_factory=list)
    perform_create: bool = True
    perform_update: bool = True
    perform_delete: bool = True
    matching_rule: MatchingRule = MatchingRule.LINK
    unmatching_rule: UnmatchingRule = UnmatchingRule.ASSIGN


@dataclass
class ProvisioningReport:
    """Outcome of one record in a task run."""
    any_type: str
    operation: ResourceOperation
    status: ReportStatus = ReportStatus.SUCCESS
    key: Optional[str] = None
    name: Optional[str] = None
    uid: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "anyType": self.any_type,
            "operation": self.operation.value,
            "status": self.status.value,
            "key": self.key,
            "name": self.name,
            "uid": self.uid,
            "message": self.message,
        }


@dataclass
class TaskExecution:
    task: str
    start: datetime
    end: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    message: Optional[str] = None
    reports: List[ProvisioningReport] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        """Report count per ``OPERATION_STATUS``."""
        counts: Dict[str, int] = {}
        for report in self.reports:
            label = f"{report.operation.value}_{report.status.value}"
            counts[label] = counts.get(label, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            "task": self.task,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "status": self.status.value,
            "message": self.message,
            "summary": self.summary(),
            "reports": [r.to_dict() for r in self.reports],
        }
