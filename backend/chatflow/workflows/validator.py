# /chatflow/workflows/validator.py

"""
Integrity checks for flow graphs.

These functions compare a saved flow against the node type registry:
- node ids are unique and every node type is known
- every edge connects two nodes of the same flow
- every edge label is one of the source node's declared outputs
- the entry node exists

All functions are pure and side-effect free. The interpreter does not call
them on every step; they back the editor's "validate" action and can be run
before a flow is activated.
"""

from typing import Optional, TypedDict

from chatflow.models.flow import Flow
from chatflow.workflows.registry import NODE_TYPES, DYNAMIC_PORT


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _fail(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def validate_node_ids(flow: Flow) -> ValidationResult:
    seen = set()
    for node in flow.nodes:
        if node.id in seen:
            return _fail("DUPLICATE_NODE_ID", f"Node id '{node.id}' is used more than once")
        seen.add(node.id)
    return _ok()


def validate_node_types(flow: Flow) -> ValidationResult:
    for node in flow.nodes:
        if node.type not in NODE_TYPES:
            return _fail("UNKNOWN_NODE_TYPE", f"Node '{node.id}' has unknown type '{node.type}'")
    return _ok()


def validate_edge_endpoints(flow: Flow) -> ValidationResult:
    node_ids = {node.id for node in flow.nodes}
    for edge in flow.edges:
        if edge.source not in node_ids:
            return _fail("DANGLING_EDGE", f"Edge '{edge.id}' starts at missing node '{edge.source}'")
        if edge.target not in node_ids:
            return _fail("DANGLING_EDGE", f"Edge '{edge.id}' points to missing node '{edge.target}'")
    return _ok()


def validate_edge_labels(flow: Flow) -> ValidationResult:
    """
    A node's declared outputs must be a superset of the labels on its edges.
    Unlabeled edges are accepted on any node that has at least one output.
    """
    for edge in flow.edges:
        node = flow.find_node(edge.source)
        if node is None or node.type not in NODE_TYPES:
            continue
        outputs = NODE_TYPES[node.type]["outputs"]
        if not outputs:
            return _fail(
                "UNEXPECTED_OUTPUT",
                f"Node '{node.id}' of type '{node.type}' has no outputs but edge '{edge.id}' leaves it"
            )
        if edge.source_handle and DYNAMIC_PORT not in outputs and edge.source_handle not in outputs:
            return _fail(
                "UNKNOWN_PORT",
                f"Edge '{edge.id}' leaves port '{edge.source_handle}' of node '{node.id}'. Allowed ports: {outputs}"
            )
    return _ok()


def validate_entry_node(flow: Flow, entry_node: str = "start") -> ValidationResult:
    if flow.entry_node_id(entry_node) is None:
        return _fail("MISSING_ENTRY_NODE", "Flow has no nodes to start from")
    return _ok()


def validate_flow(flow: Flow, entry_node: str = "start") -> ValidationResult:
    """Runs every check in order and returns the first failure."""
    checks = (
        validate_node_ids(flow),
        validate_node_types(flow),
        validate_edge_endpoints(flow),
        validate_edge_labels(flow),
        validate_entry_node(flow, entry_node),
    )
    for result in checks:
        if not result["is_valid"]:
            return result
    return _ok()
