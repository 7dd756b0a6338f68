"""
Pydantic models for recurring task rows.

Store rows arrive as plain dicts in either snake_case or the store's
camelCase (``nextExecutionAt``, ``intervalHours``, …). Timestamps may be
datetimes, ISO strings or epoch milliseconds; naive values are treated as UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_utc(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            # pydantic only reports ValueError/AssertionError as validation errors
            raise ValueError(f"epoch milliseconds out of range: {value}") from e
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RecurringTaskDefinition(BaseModel):
    """A recurring task as stored in a workspace."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    prompt: str
    interval_hours: float = Field(..., alias="intervalHours", gt=0)
    last_executed_at: Optional[datetime] = Field(None, alias="lastExecutedAt")
    next_execution_at: Optional[datetime] = Field(None, alias="nextExecutionAt")
    enabled: bool = True
    project_id: Optional[str] = Field(None, alias="projectId")
    description: Optional[str] = None

    @field_validator("last_executed_at", "next_execution_at", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value: Any) -> Any:
        return _to_utc(value)

    def is_due(self, now: datetime) -> bool:
        """Enabled with a non-null next execution at or before ``now``."""
        return self.enabled and self.next_execution_at is not None and self.next_execution_at <= now

    def next_execution_after(self, completed_at: datetime) -> datetime:
        return completed_at + timedelta(hours=self.interval_hours)

    def build_system_prompt(self) -> str:
        """System prompt for the worker that executes this task."""
        prompt = (
            "You are executing a recurring task. Task details:\n"
            f"- Name: {self.name}\n"
            f"- Description: {self.description or 'No description provided'}\n"
            f"- Recurring Interval: {self.interval_hours:g} hours"
        )
        if self.project_id:
            prompt += f"\n- Project ID: {self.project_id} (use project tools to look up project details)"
        prompt += "\n\nPlease execute the following prompt and complete the requested task."
        return prompt
