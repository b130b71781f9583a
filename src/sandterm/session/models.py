"""
Pydantic models for the session control API.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateSessionRequest(BaseModel):
    """POST /api/sessions request body."""

    cols: Optional[int] = Field(default=None, gt=0, le=1000)
    rows: Optional[int] = Field(default=None, gt=0, le=1000)


class CreateSessionResponse(BaseModel):
    """POST /api/sessions response."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    message: str = "Session created successfully"
    expires_in: str = Field(alias="expiresIn")


class ResizeRequest(BaseModel):
    """POST /api/sessions/{sessionId}/resize request body."""

    cols: int = Field(gt=0, le=1000)
    rows: int = Field(gt=0, le=1000)


class DimensionsInfo(BaseModel):
    cols: int
    rows: int


class SessionStatus(BaseModel):
    """GET /api/sessions/{sessionId} response."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    active: bool
    state: str
    last_activity: str = Field(alias="lastActivity")
    created_at: str = Field(alias="createdAt")
    dimensions: DimensionsInfo


class SessionListResponse(BaseModel):
    """GET /api/sessions response."""

    sessions: list[SessionStatus]
    count: int


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    error: str
