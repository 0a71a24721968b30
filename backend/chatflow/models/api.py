# /chatflow/models/api.py

from pydantic import BaseModel, Field
from typing import List, Dict, Optional
from datetime import datetime, timezone

from chatflow.models.flow import FlowEdge, FlowNode, TriggerType

# Request and response bodies of the HTTP surface.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class FlowCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    trigger_type: TriggerType = TriggerType.KEYWORD
    trigger_keywords: List[str] = Field(default_factory=list)


class FlowUpdateRequest(BaseModel):
    """Partial update; fields left out are not touched."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_keywords: Optional[List[str]] = None
    nodes: Optional[List[FlowNode]] = None
    edges: Optional[List[FlowEdge]] = None
    is_active: Optional[bool] = None


class InboundMessage(BaseModel):
    """One customer message handed over by the webhook ingestion layer."""
    customer_id: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    message: str = Field(default="", max_length=4096)
    channel: str = Field(default="whatsapp", pattern="^(whatsapp|instagram|messenger)$")
    deliver: bool = Field(default=False, description="Send the resulting actions through the delivery channel")
