# /chatflow/workflows/registry.py

"""
Node type registry.

Static, read-only catalog of the node kinds a flow may contain, kept as pure
data. Each entry declares:
- inputs / outputs: named ports. "dynamic" means the editor creates one
  output per configured option (buttons, list rows), so any label is valid
- config: field specs the flow editor renders for the node

The interpreter only consults this catalog for the optional integrity check
in `chatflow.workflows.validator`.
"""

from typing import Dict, Any, List, Optional

DYNAMIC_PORT = "dynamic"

# Type definition for one config field
FieldSpec = Dict[str, Any]

# Type definition for one registry entry
NodeTypeDefinition = Dict[str, Any]

NODE_TYPES: Dict[str, NodeTypeDefinition] = {
    "trigger": {
        "label": "Start",
        "category": "triggers",
        "icon": "play",
        "color": "#10B981",
        "description": "Entry point of the conversation",
        "inputs": [],
        "outputs": ["default"],
        "config": [
            {"key": "trigger_type", "type": "select", "label": "Trigger", "options": ["keyword", "first_message", "button_click"]},
            {"key": "keywords", "type": "tags", "label": "Keywords"},
        ],
    },
    "message": {
        "label": "Message",
        "category": "actions",
        "icon": "message-square",
        "color": "#3B82F6",
        "description": "Send a text message",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [
            {"key": "text", "type": "textarea", "label": "Message text"},
            {"key": "delay", "type": "number", "label": "Delay (seconds)", "default": 0},
        ],
    },
    "buttons": {
        "label": "Buttons",
        "category": "actions",
        "icon": "grid",
        "color": "#8B5CF6",
        "description": "Message with reply buttons",
        "inputs": ["default"],
        "outputs": [DYNAMIC_PORT],
        "config": [
            {"key": "text", "type": "textarea", "label": "Message text"},
            {"key": "buttons", "type": "buttons", "label": "Buttons", "max": 3},
        ],
    },
    "list": {
        "label": "List",
        "category": "actions",
        "icon": "list",
        "color": "#F59E0B",
        "description": "Menu of multiple options",
        "inputs": ["default"],
        "outputs": [DYNAMIC_PORT],
        "config": [
            {"key": "text", "type": "textarea", "label": "Message text"},
            {"key": "button_text", "type": "text", "label": "Button text"},
            {"key": "sections", "type": "list_sections", "label": "Sections"},
        ],
    },
    "image": {
        "label": "Image",
        "category": "actions",
        "icon": "image",
        "color": "#EC4899",
        "description": "Send an image",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [
            {"key": "url", "type": "text", "label": "Image URL"},
            {"key": "caption", "type": "textarea", "label": "Caption"},
        ],
    },
    "document": {
        "label": "Document",
        "category": "actions",
        "icon": "file",
        "color": "#06B6D4",
        "description": "Send a file",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [
            {"key": "url", "type": "text", "label": "File URL"},
            {"key": "filename", "type": "text", "label": "File name"},
        ],
    },
    "wait_input": {
        "label": "Wait for input",
        "category": "logic",
        "icon": "edit",
        "color": "#14B8A6",
        "description": "Wait for the customer's reply",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [
            {"key": "variable", "type": "text", "label": "Variable name"},
            {"key": "validation", "type": "select", "label": "Validation", "options": ["none", "phone", "email", "number"]},
            {"key": "error_message", "type": "textarea", "label": "Error message"},
        ],
    },
    "condition": {
        "label": "Condition",
        "category": "logic",
        "icon": "git-branch",
        "color": "#F97316",
        "description": "Branch on a condition",
        "inputs": ["default"],
        "outputs": ["true", "false"],
        "config": [
            {"key": "variable", "type": "text", "label": "Variable"},
            {"key": "operator", "type": "select", "label": "Operator", "options": ["equals", "not_equals", "contains", "greater", "less"]},
            {"key": "value", "type": "text", "label": "Value"},
        ],
    },
    "set_variable": {
        "label": "Set variable",
        "category": "logic",
        "icon": "hash",
        "color": "#6366F1",
        "description": "Assign a value to a variable",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [
            {"key": "variable", "type": "text", "label": "Variable name"},
            {"key": "value", "type": "text", "label": "Value"},
        ],
    },
    "api_call": {
        "label": "External API",
        "category": "integrations",
        "icon": "globe",
        "color": "#EF4444",
        "description": "Call an external HTTP API",
        "inputs": ["default"],
        "outputs": ["success", "error"],
        "config": [
            {"key": "url", "type": "text", "label": "API URL"},
            {"key": "method", "type": "select", "label": "Method", "options": ["GET", "POST", "PUT", "DELETE"]},
            {"key": "headers", "type": "key_value", "label": "Headers"},
            {"key": "body", "type": "textarea", "label": "Body (JSON)"},
            {"key": "result_variable", "type": "text", "label": "Result variable"},
        ],
    },
    "ai_response": {
        "label": "AI reply",
        "category": "integrations",
        "icon": "sparkles",
        "color": "#A855F7",
        "description": "Generate a reply with AI",
        "inputs": ["default"],
        "outputs": ["success", "error"],
        "config": [
            {"key": "context", "type": "textarea", "label": "Conversation context"},
            {"key": "result_variable", "type": "text", "label": "Result variable"},
        ],
    },
    "assign_agent": {
        "label": "Assign agent",
        "category": "actions",
        "icon": "user-plus",
        "color": "#0EA5E9",
        "description": "Hand the conversation over to a human agent",
        "inputs": ["default"],
        "outputs": [],
        "config": [
            {"key": "agent_id", "type": "agent_select", "label": "Agent"},
            {"key": "message", "type": "textarea", "label": "Message to the customer"},
        ],
    },
    "add_tag": {
        "label": "Add tag",
        "category": "actions",
        "icon": "tag",
        "color": "#84CC16",
        "description": "Tag the customer",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [{"key": "tag", "type": "text", "label": "Tag"}],
    },
    "delay": {
        "label": "Delay",
        "category": "logic",
        "icon": "clock",
        "color": "#78716C",
        "description": "Pause before continuing",
        "inputs": ["default"],
        "outputs": ["default"],
        "config": [
            {"key": "seconds", "type": "number", "label": "Seconds"},
        ],
    },
    "end": {
        "label": "End",
        "category": "logic",
        "icon": "check-circle",
        "color": "#DC2626",
        "description": "End the conversation",
        "inputs": ["default"],
        "outputs": [],
        "config": [],
    },
}


def describe(node_type: str) -> Optional[Dict[str, List[Any]]]:
    """Port shape and config fields of a node type, or None if the type is unknown."""
    definition = NODE_TYPES.get(node_type)
    if definition is None:
        return None
    return {
        "inputs": list(definition["inputs"]),
        "outputs": list(definition["outputs"]),
        "configFields": [dict(field) for field in definition["config"]],
    }


def list_node_types() -> List[Dict[str, Any]]:
    """Catalog in the shape the flow editor consumes."""
    return [{"type": node_type, **definition} for node_type, definition in NODE_TYPES.items()]
