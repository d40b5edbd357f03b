from __future__ import annotations

from datetime import datetime
import enum
from typing import Any

from pydantic import BaseModel, Field


class BulkAssignItem(BaseModel):
    user_id: int
    department_id: int
    role_name: str
    is_primary: bool = False
    expires_at: datetime | None = None


class BulkRemoveItem(BaseModel):
    user_id: int
    membership_id: int
    role_name: str


class BulkItemStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class BulkItemResult(BaseModel):
    index: int
    status: BulkItemStatus
    detail: str | None = None
    error_kind: str | None = None
    data: dict[str, Any] | None = None


class BulkResult(BaseModel):
    successful: int = 0
    failed: int = 0
    cancelled: int = 0
    results: list[BulkItemResult] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def add(self, result: BulkItemResult) -> None:
        self.results.append(result)
        if result.status == BulkItemStatus.SUCCESS:
            self.successful += 1
        elif result.status == BulkItemStatus.ERROR:
            self.failed += 1
        else:
            self.cancelled += 1


class BulkAssignIn(BaseModel):
    assignments: list[dict[str, Any]]


class BulkRemoveIn(BaseModel):
    removals: list[dict[str, Any]]
