# /chatflow/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from chatflow.models.nodes import NodeConfig, NodeType, parse_node_config


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    FIRST_MESSAGE = "first_message"
    BUTTON_CLICK = "button_click"


class NodePosition(BaseModel):
    """Canvas position. Display-only, never read by the interpreter."""
    x: float = 0
    y: float = 0


class FlowNode(BaseModel):
    """One typed step of a flow, as saved by the flow editor."""
    id: str = Field(..., min_length=1, description="Node id, unique within the flow")
    type: str = Field(..., description="Node type tag (see NodeType)")
    data: Dict[str, Any] = Field(default_factory=dict, description="Free-form config map")
    position: Optional[NodePosition] = Field(default=None, description="Canvas position")

    def config(self) -> Optional[NodeConfig]:
        """Typed view of `data`; raises pydantic.ValidationError on a malformed map."""
        return parse_node_config(self.type, self.data)


class FlowEdge(BaseModel):
    """Directed connection, optionally labeled with the source port it leaves from."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default="", description="Edge id")
    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle", description="Output port label")


class Flow(BaseModel):
    """Persisted conversation graph owned by an organization."""
    id: Optional[str] = Field(default=None, description="Flow identifier")
    organization_id: str = Field(..., description="Owning organization")
    name: str = Field(..., description="Flow name")
    description: Optional[str] = Field(default=None, description="Flow description")
    trigger_type: TriggerType = Field(default=TriggerType.KEYWORD, description="Rule that starts a session")
    trigger_keywords: List[str] = Field(default_factory=list, description="Match strings for keyword/button triggers")
    nodes: List[FlowNode] = Field(default_factory=list, description="Flow nodes in declaration order")
    edges: List[FlowEdge] = Field(default_factory=list, description="Flow edges in declaration order")
    is_active: bool = Field(default=False, description="Whether the router may start sessions on this flow")
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(default=None, description="Last update timestamp")

    model_config = ConfigDict(populate_by_name=True)

    def find_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def edges_from(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def outgoing_edge(self, node_id: str, handle: Optional[str] = None) -> Optional[FlowEdge]:
        """
        Selects the edge leaving `node_id`.

        With a handle, only the edge labeled with exactly that handle qualifies.
        Without one, the first unlabeled edge is taken, or an edge labeled
        "default" (the label single-output ports carry in some saved flows).
        There is no fallback from one labeled branch to another.
        """
        edges = self.edges_from(node_id)
        if handle is not None:
            return next((edge for edge in edges if edge.source_handle == handle), None)
        unlabeled = next((edge for edge in edges if not edge.source_handle), None)
        if unlabeled is not None:
            return unlabeled
        return next((edge for edge in edges if edge.source_handle == "default"), None)

    def entry_node_id(self, preferred: str = "start") -> Optional[str]:
        """The node a fresh session starts at: `preferred`, else the first trigger node, else the first node."""
        if self.find_node(preferred):
            return preferred
        for node in self.nodes:
            if node.type == NodeType.TRIGGER.value:
                return node.id
        return self.nodes[0].id if self.nodes else None
