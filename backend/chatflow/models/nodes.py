# /chatflow/models/nodes.py

from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Type
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

# Typed configuration for every node kind. A node's free-form `data` map is
# validated against the model registered for its type before evaluation.


class NodeType(str, Enum):
    TRIGGER = "trigger"
    MESSAGE = "message"
    BUTTONS = "buttons"
    LIST = "list"
    IMAGE = "image"
    DOCUMENT = "document"
    WAIT_INPUT = "wait_input"
    DELAY = "delay"
    SET_VARIABLE = "set_variable"
    CONDITION = "condition"
    API_CALL = "api_call"
    AI_RESPONSE = "ai_response"
    ASSIGN_AGENT = "assign_agent"
    ADD_TAG = "add_tag"
    END = "end"


class NodeConfig(BaseModel):
    """Base for node configs. Editor-only keys such as `label` are kept as extras."""
    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def drop_blank_values(cls, data: Any) -> Any:
        # The editor stores cleared fields as null or "", both mean "use the default"
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None and v != ""}
        return data


def _stringify(v: Any) -> Any:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return v


# Numbers and booleans typed into text fields are stored as strings
CoercedStr = Annotated[str, BeforeValidator(_stringify)]


class TriggerConfig(NodeConfig):
    trigger_type: str = "keyword"
    keywords: List[str] = Field(default_factory=list)


class MessageConfig(NodeConfig):
    text: str = ""
    delay: float = 0


class ButtonsConfig(NodeConfig):
    text: str = ""
    buttons: List[Any] = Field(default_factory=list)


class ListConfig(NodeConfig):
    text: str = ""
    button_text: str = ""
    sections: List[Dict[str, Any]] = Field(default_factory=list)


class ImageConfig(NodeConfig):
    url: str = ""
    caption: str = ""


class DocumentConfig(NodeConfig):
    url: str = ""
    filename: str = ""


class WaitInputConfig(NodeConfig):
    variable: str = "input"
    validation: str = "none"
    error_message: str = ""


class DelayConfig(NodeConfig):
    seconds: Optional[float] = None


class SetVariableConfig(NodeConfig):
    variable: str = ""
    value: CoercedStr = ""


class ConditionConfig(NodeConfig):
    variable: str = ""
    operator: str = "equals"
    value: CoercedStr = ""


class ApiCallConfig(NodeConfig):
    url: str = ""
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    result_variable: str = ""

    @field_validator("headers", mode="before")
    @classmethod
    def normalize_headers(cls, v):
        # key_value editor fields arrive as [{"key": ..., "value": ...}]
        if isinstance(v, list):
            return {str(item.get("key")): str(item.get("value", "")) for item in v if isinstance(item, dict) and item.get("key")}
        return v

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()


class AiResponseConfig(NodeConfig):
    context: str = ""
    result_variable: str = "ai_response"


class AssignAgentConfig(NodeConfig):
    agent_id: Optional[CoercedStr] = None
    message: str = ""


class AddTagConfig(NodeConfig):
    tag: str = ""


class EndConfig(NodeConfig):
    pass


NODE_CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.MESSAGE: MessageConfig,
    NodeType.BUTTONS: ButtonsConfig,
    NodeType.LIST: ListConfig,
    NodeType.IMAGE: ImageConfig,
    NodeType.DOCUMENT: DocumentConfig,
    NodeType.WAIT_INPUT: WaitInputConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.SET_VARIABLE: SetVariableConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.API_CALL: ApiCallConfig,
    NodeType.AI_RESPONSE: AiResponseConfig,
    NodeType.ASSIGN_AGENT: AssignAgentConfig,
    NodeType.ADD_TAG: AddTagConfig,
    NodeType.END: EndConfig,
}


def parse_node_config(node_type: str, data: Optional[Dict[str, Any]]) -> Optional[NodeConfig]:
    """
    Validates a node's data map against its typed config.
    Returns None for node types this service does not know.
    Raises pydantic.ValidationError when the data does not fit the type.
    """
    try:
        kind = NodeType(node_type)
    except ValueError:
        return None
    return NODE_CONFIG_MODELS[kind].model_validate(data or {})
