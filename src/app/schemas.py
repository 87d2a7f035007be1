"""
Pydantic response and request models for the Retain Gym API.

Every endpoint has a typed schema. Request bodies accept the camelCase
field names the front end sends.
"""

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Interventions
# =============================================================================


class RunSummaryResponse(BaseModel):
    tenant_id: str
    run_date: str
    outcome: str
    members_processed: int
    interventions_created: int
    errors: int
    error_details: list[str]
    complete: bool


class InterventionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    member_id: str
    intervention_type: str
    channel: str
    status: str
    reason: str | None = None
    rendered_subject: str | None = None
    rendered_body: str
    run_date: str | None = None
    provider_message_id: str | None = None
    failure_reason: str | None = None
    attempt_count: int
    created_at: str
    updated_at: str
    approved_at: str | None = None
    sent_at: str | None = None
    failed_at: str | None = None


class SuccessResponse(BaseModel):
    success: bool
    status: str | None = None


class CountResponse(BaseModel):
    count: int


# =============================================================================
# Coach accountability
# =============================================================================


class AssignCoachRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: str = Field(alias="memberId")
    coach_id: str = Field(alias="coachId")


class MarkSavedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: str = Field(alias="memberId")
    saved: bool = True


class CoachTouchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: str = Field(alias="memberId")
    coach_id: str = Field(alias="coachId")
    channel: str = Field(min_length=1, max_length=32)
    outcome: str = Field(min_length=1, max_length=64)
    notes: str | None = None


class AssignmentResponse(BaseModel):
    member_id: str
    coach_id: str
    saved: bool
    last_touch_at: str | None = None
    assigned_at: str
    assigned_by: str | None = None


class AutoAssignResponse(BaseModel):
    assigned: int


class OverdueAssignmentResponse(BaseModel):
    member_id: str
    coach_id: str
    days_since_touch: int
    last_touch_at: str | None = None


class CoachTouchResponse(BaseModel):
    id: str
    member_id: str


# =============================================================================
# System
# =============================================================================


class HealthResponse(BaseModel):
    status: str
    demo_mode: bool
    db_connected: bool


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
