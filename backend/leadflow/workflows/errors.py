# /leadflow/workflows/errors.py

from typing import List, Optional


class FlowConfigurationError(Exception):
    """A flow definition cannot be used: missing flow, start node or dangling node ids."""

    def __init__(self, flow_id: Optional[str], message: str, problems: Optional[List[str]] = None):
        self.flow_id = flow_id
        self.problems = problems or []
        super().__init__(f"Flow {flow_id!r}: {message}")


class NodeResolutionError(Exception):
    """A node id referenced at runtime does not resolve to a usable node."""

    def __init__(self, node_id: Optional[str], reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Cannot resolve node {node_id!r}: {reason}")
