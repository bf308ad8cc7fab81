from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr
from datetime import datetime
from typing import Literal

class CheckInPayload(BaseModel):
    """What is embedded in the barcode: {"eventId": str, "ts": int, "sig": hex}."""
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    event_id: StrictStr = Field(alias="eventId")
    issued_at_ms: StrictInt = Field(alias="ts")
    signature: StrictStr = Field(alias="sig")

class CheckInRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    user_id: str
    user_name: str
    device_info: str
    checked_at: datetime

class CheckInSummary(BaseModel):
    event_id: str
    check_in_count: int = 0
    last_check_in_at: datetime | None = None
    all_check_ins: list[datetime] = Field(default_factory=list)

class QRCodeRead(BaseModel):
    event_id: str
    payload: str  # the exact text rendered into the barcode
    issued_at_ms: int
    generation: int
    rotation_seconds: float
    state: Literal["idle", "active"]
    event_title: str | None = None
    check_in_count: int = 0

class ScanRequest(BaseModel):
    text: str  # raw string yielded by the camera analyzer
    device_info: str | None = None

class ScanResult(BaseModel):
    status: Literal["checked_in", "ignored"]
    event_id: str | None = None
    already_checked_in: bool = False
    checkin: CheckInRead | None = None
