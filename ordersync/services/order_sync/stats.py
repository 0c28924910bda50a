from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import OrderSyncError

MAX_RECORDED_ISSUES = 200


@dataclass
class RunStats:
    """Counters and non-fatal issues accumulated during one store run."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    status_changed: int = 0
    skipped: int = 0
    api_calls: int = 0
    issues: List[Dict[str, Any]] = field(default_factory=list)
    dropped_issues: int = 0

    def record_issue(self, error: OrderSyncError) -> None:
        if len(self.issues) >= MAX_RECORDED_ISSUES:
            self.dropped_issues += 1
            return
        self.issues.append(error.to_summary())

    def issue_count(self, code: str) -> int:
        return sum(1 for issue in self.issues if issue.get("code") == code)

    def counts(self) -> Dict[str, int]:
        return {
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "status_changed": self.status_changed,
            "skipped": self.skipped,
        }
