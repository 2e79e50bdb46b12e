from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class AlertType(str, Enum):
    GAP_1 = "gap_1"
    GAP_2 = "gap_2"


class GapAlertEvent(BaseModel):
    """Deviation signal published by the market data backend."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    instrument_id: int = Field(..., description="Identifier of the instrument")
    instrument_name: str
    alert_type: AlertType
    time_slot: str = Field(..., description="Label of the intraday slot, e.g. 09:30")
    current_value: float
    baseline_value: float | None = Field(None, description="Reference value, display only")
    deviation_percent: float
    baseline_date: date | None = None
    triggered_at: datetime = Field(..., description="Producer side trigger time")

    @field_validator("baseline_date", mode="before")
    @classmethod
    def _keep_date_part(cls, value: Any) -> Any:
        if value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and "T" in value:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        return value


class GapAlertRecord(GapAlertEvent):
    """An ingested event; ``read`` is the only field that changes afterwards."""

    model_config = ConfigDict(frozen=False)

    id: str = Field(..., min_length=1)
    read: bool = False
    received_at: datetime

    def __setattr__(self, name: str, value: Any) -> None:
        if name != "read":
            raise AttributeError(f"{type(self).__name__}.{name} is read-only")
        super().__setattr__(name, value)

    @classmethod
    def from_event(
        cls, event: GapAlertEvent, *, alert_id: str, received_at: datetime
    ) -> "GapAlertRecord":
        return cls(**event.model_dump(), id=alert_id, read=False, received_at=received_at)

    def mark_read(self) -> bool:
        """Flag the record as read; returns ``False`` when it already was."""

        if self.read:
            return False
        self.read = True
        return True

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UnreadCountRead(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    unread_count: int


class AlertSnapshotMessage(BaseModel):
    """Frame pushed to WebSocket subscribers after every change."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["snapshot"] = "snapshot"
    change: str | None = None
    active: list[GapAlertRecord] = Field(default_factory=list)
    unread_count: int = 0
