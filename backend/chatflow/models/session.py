# /chatflow/models/session.py

from enum import Enum
from typing import Optional, Dict
from datetime import datetime, timezone
from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    """Lifecycle of a flow session. Everything but ACTIVE is terminal."""
    ACTIVE = "active"
    COMPLETED = "completed"
    TRANSFERRED = "transferred"
    # Set by analytics housekeeping only, the interpreter never produces it
    DROPPED = "dropped"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FlowSession(BaseModel):
    """Resumable execution cursor of one customer through one flow."""
    id: Optional[str] = Field(default=None, description="Session identifier")
    organization_id: Optional[str] = Field(default=None, description="Owning organization")
    flow_id: str = Field(..., description="Flow being executed")
    customer_id: str = Field(..., description="Customer the session belongs to")
    phone: Optional[str] = Field(default=None, description="Channel address of the customer")
    channel: str = Field(default="whatsapp", description="Delivery channel")
    current_node: str = Field(default="start", description="Node the session is positioned at")
    variables: Dict[str, str] = Field(default_factory=dict, description="Variable environment")
    status: SessionStatus = Field(default=SessionStatus.ACTIVE, description="Lifecycle status")
    resume_at: Optional[datetime] = Field(default=None, description="Wake-up time while parked on a delay node")
    started_at: datetime = Field(default_factory=utc_now, description="Session creation timestamp")
    ended_at: Optional[datetime] = Field(default=None, description="Set when the session leaves ACTIVE")
    updated_at: Optional[datetime] = Field(default=None, description="Last persisted progress")

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def finish(self, status: SessionStatus) -> None:
        """Moves the session to a terminal status. Terminal sessions never change again."""
        if not self.is_active:
            return
        self.status = status
        self.resume_at = None
        self.ended_at = utc_now()
