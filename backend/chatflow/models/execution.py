# /chatflow/models/execution.py

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

from chatflow.models.session import FlowSession

# Actions are the interpreter's only output towards the outside world. The
# delivery channel turns each one into a platform call, in list order.


class SendMessageAction(BaseModel):
    type: Literal["send_message"] = "send_message"
    text: str
    delay: float = 0


class SendButtonsAction(BaseModel):
    type: Literal["send_buttons"] = "send_buttons"
    text: str
    buttons: List[Any] = Field(default_factory=list)


class SendListAction(BaseModel):
    type: Literal["send_list"] = "send_list"
    text: str
    button_text: str = ""
    sections: List[Dict[str, Any]] = Field(default_factory=list)


class SendImageAction(BaseModel):
    type: Literal["send_image"] = "send_image"
    url: str
    caption: str = ""


class SendDocumentAction(BaseModel):
    type: Literal["send_document"] = "send_document"
    url: str
    filename: str = ""


class AssignAgentAction(BaseModel):
    type: Literal["assign_agent"] = "assign_agent"
    agent_id: Optional[str] = None
    message: str = ""


class AddTagAction(BaseModel):
    type: Literal["add_tag"] = "add_tag"
    tag: str


Action = Annotated[
    Union[
        SendMessageAction,
        SendButtonsAction,
        SendListAction,
        SendImageAction,
        SendDocumentAction,
        AssignAgentAction,
        AddTagAction,
    ],
    Field(discriminator="type"),
]


class StepResult(BaseModel):
    """Outcome of one interpreter step."""
    actions: List[Action] = Field(default_factory=list)
    completed: bool = False
    transferred: bool = False
    wait_for_input: bool = False
    stalled: bool = False
    delay_seconds: Optional[float] = None
    error: Optional[str] = None
    session: Optional[FlowSession] = Field(default=None, exclude=True)


class RouterResult(BaseModel):
    """What the router reports back for one inbound message."""
    matched: bool
    session_id: Optional[str] = None
    flow_id: Optional[str] = None
    actions: List[Action] = Field(default_factory=list)
    completed: bool = False
    transferred: bool = False
    wait_for_input: bool = False
    stalled: bool = False
    delay_seconds: Optional[float] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_step(cls, step: StepResult, session: FlowSession) -> "RouterResult":
        return cls(
            matched=True,
            session_id=session.id,
            flow_id=session.flow_id,
            **step.model_dump(exclude={"session"}),
        )
