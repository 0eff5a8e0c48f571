# dispatch_engine/transport/schemas.py
from pydantic import BaseModel, Field

from dispatch_engine.core.dispatch.domain import JobStatus, OverrideAction


class JobCreateIn(BaseModel):
    service_category_id: str = Field(min_length=1, max_length=64)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)
    urgency: str = Field(default="standard", max_length=32)
    region_id: str | None = Field(default=None, max_length=64)
    org_id: str | None = Field(default=None, max_length=64)
    reference_number: str | None = Field(default=None, max_length=64)
    dispatch: bool = False


class DispatchIn(BaseModel):
    expected_version: int | None = None


class AttemptResponseIn(BaseModel):
    accepted: bool
    reason: str | None = Field(default=None, max_length=500)


class OverrideIn(BaseModel):
    action: OverrideAction
    note: str | None = Field(default=None, max_length=1000)
    expected_version: int | None = None


class StatusIn(BaseModel):
    status: JobStatus
    expected_version: int | None = None


class CommandOut(BaseModel):
    outcome: str
    job_id: str
    status: str | None
    message: str
    attempt_id: str | None = None
    version: int | None = None
