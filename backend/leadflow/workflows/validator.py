# /leadflow/workflows/validator.py

"""
Pure validation functions for flow definitions and captured answers.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No message sending
"""

import re
from typing import Any, Dict, Iterable, List, Optional, TypedDict
from pydantic import TypeAdapter, ValidationError

from leadflow.models.flow import END, FlowGraph, Node
from leadflow.workflows.errors import FlowConfigurationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_node_adapter = TypeAdapter(Node)


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _ok() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def _fail(error_code: str, message: str) -> ValidationResult:
    return {"is_valid": False, "error_code": error_code, "message": message}


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def validate_email(value: Optional[str]) -> ValidationResult:
    """
    Validate a customer-supplied email address (after trimming and lower-casing).
    """
    email = normalize_email(value)
    if not email:
        return _fail("EMPTY_EMAIL", "Email cannot be empty")
    if not EMAIL_PATTERN.match(email):
        return _fail("INVALID_EMAIL", f"'{email}' is not a valid email address")
    return _ok()


def validate_target(graph_nodes: Dict[str, Any], source_id: str, target_id: Optional[str]) -> ValidationResult:
    """
    Validate that a pointer leaving `source_id` resolves to a node or END.
    """
    if not target_id:
        return _fail("EMPTY_TARGET", f"Node '{source_id}' has an empty target")
    if target_id != END and target_id not in graph_nodes:
        return _fail("UNKNOWN_TARGET", f"Node '{source_id}' points to unknown node '{target_id}'")
    return _ok()


def validate_flow_references(graph: FlowGraph) -> List[ValidationResult]:
    """
    Check referential integrity of a whole graph.

    Returns the list of failed checks (empty when the graph is consistent).
    """
    failures: List[ValidationResult] = []

    if graph.start_node_id not in graph.nodes:
        failures.append(_fail("UNKNOWN_START", f"Start node '{graph.start_node_id}' does not exist"))

    for node in graph.nodes.values():
        for target in node.outgoing_ids():
            result = validate_target(graph.nodes, node.node_id, target)
            if not result["is_valid"]:
                failures.append(result)

        replies = node.reply_ids()
        duplicates = sorted({r for r in replies if replies.count(r) > 1})
        if duplicates:
            failures.append(_fail(
                "DUPLICATE_REPLY_ID",
                f"Node '{node.node_id}' offers the same reply id more than once: {', '.join(duplicates)}",
            ))

    for label, target in (
        ("completion_follow_up_yes_node_id", graph.completion_follow_up_yes_node_id),
        ("completion_follow_up_no_node_id", graph.completion_follow_up_no_node_id),
    ):
        if target:
            result = validate_target(graph.nodes, label, target)
            if not result["is_valid"]:
                failures.append(result)

    return failures


def build_flow_graph(
    flow_doc: Optional[Dict[str, Any]],
    node_docs: Iterable[Dict[str, Any]],
    strict: bool = True,
) -> FlowGraph:
    """
    Build a FlowGraph from its stored flow document and node documents.

    Raises FlowConfigurationError when the flow is missing, a node is
    malformed, node ids collide, or (when strict) any pointer dangles or an
    interactive node repeats a reply id.
    Non-strict loading keeps dangling pointers; they surface per turn instead.
    """
    if not flow_doc:
        raise FlowConfigurationError(None, "flow document not found")

    flow_id = str(flow_doc.get("flow_id") or flow_doc.get("_id"))
    nodes: Dict[str, Node] = {}
    problems: List[str] = []

    for doc in node_docs:
        payload = {k: v for k, v in doc.items() if k not in ("_id", "flow_id")}
        try:
            node = _node_adapter.validate_python(payload)
        except ValidationError as e:
            problems.append(f"Malformed node {doc.get('node_id')!r}: {e.errors()[0].get('msg')}")
            continue
        if node.node_id in nodes:
            problems.append(f"Duplicate node id '{node.node_id}'")
            continue
        nodes[node.node_id] = node

    if problems:
        raise FlowConfigurationError(flow_id, "invalid nodes", problems)

    start_node_id = flow_doc.get("start_node_id")
    if not start_node_id or start_node_id not in nodes:
        raise FlowConfigurationError(flow_id, f"start node {start_node_id!r} not found")

    graph = FlowGraph(
        flow_id=flow_id,
        name=flow_doc.get("name", ""),
        start_node_id=start_node_id,
        nodes=nodes,
        completion_follow_up_yes_node_id=flow_doc.get("completion_follow_up_yes_node_id"),
        completion_follow_up_no_node_id=flow_doc.get("completion_follow_up_no_node_id"),
        completion_follow_up_enabled=bool(flow_doc.get("completion_follow_up_enabled", False)),
        completion_follow_up_delay_minutes=flow_doc.get("completion_follow_up_delay_minutes"),
        completion_follow_up_message=flow_doc.get("completion_follow_up_message"),
    )

    failures = validate_flow_references(graph)
    if failures and strict:
        raise FlowConfigurationError(flow_id, "invalid node references", [f["message"] for f in failures])

    return graph
