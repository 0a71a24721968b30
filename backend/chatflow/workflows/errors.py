# /chatflow/workflows/errors.py


class FlowEngineError(Exception):
    """Base class for faults that abort an interpreter step."""

    reason = "engine_error"


class FlowCycleError(FlowEngineError):
    """A node was reached twice within one step without suspending in between."""

    reason = "cycle_detected"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' was revisited within a single step")


class NodeConfigError(FlowEngineError):
    """A node's config map does not fit its node type."""

    reason = "invalid_node_config"

    def __init__(self, node_id: str, detail: str):
        self.node_id = node_id
        super().__init__(f"Invalid config on node '{node_id}': {detail}")


class PersistenceError(Exception):
    """A flow or session store could not be reached. Never means "not found"."""

    reason = "store_unavailable"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Store operation '{operation}' failed")
