"""
Workflow file loader for the flow-orchestra CLI.

Loads a JSON document of the form ``{"nodes": [...], "edges": [...]}``,
accepting both the flat node shape and the editor node shape.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .errors import ValidationError
from .graph import EdgeSpec, NodeSpec, WorkGraph, build_graph, coerce_edges, coerce_nodes
from .logging import get_system_logger


@dataclass
class WorkflowDefinition:
    """Nodes and edges loaded from a workflow file."""
    nodes: List[NodeSpec]
    edges: List[EdgeSpec]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def build(self) -> WorkGraph:
        return build_graph(self.nodes, self.edges)


def parse_workflow(data: Any) -> WorkflowDefinition:
    """Validate a decoded workflow document.

    Raises:
        ValidationError: If the document is not a workflow or a node/edge is malformed.
    """
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
        raise ValidationError("Workflow document must be an object with a 'nodes' list")
    edges = data.get("edges") or []
    if not isinstance(edges, list):
        raise ValidationError("Workflow 'edges' must be a list")
    nodes = coerce_nodes(data["nodes"])
    edge_list = coerce_edges(edges)
    metadata = {k: v for k, v in data.items() if k not in ("nodes", "edges")}
    return WorkflowDefinition(nodes=nodes, edges=edge_list, metadata=metadata)


def load_workflow(workflow_path: Path | str) -> WorkflowDefinition:
    """
    Load a workflow JSON file.

    Args:
        workflow_path: Path to the workflow file

    Returns:
        WorkflowDefinition with parsed nodes and edges

    Raises:
        FileNotFoundError: If the file does not exist
        ValidationError: If the file is not valid JSON or not a workflow
    """
    workflow_path = Path(workflow_path)
    system_logger = get_system_logger()
    system_logger.info("workflow_loader", f"Loading workflow: {workflow_path.name}")

    if not workflow_path.exists():
        system_logger.error("workflow_loader", f"File not found: {workflow_path}")
        raise FileNotFoundError(f"Workflow file not found: {workflow_path}")

    try:
        data = json.loads(workflow_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        system_logger.error("workflow_loader", f"Invalid JSON in {workflow_path.name}: {e}")
        raise ValidationError(f"Workflow file is not valid JSON: {e}") from e

    workflow = parse_workflow(data)
    system_logger.info("workflow_loader",
                       f"Loaded workflow: {len(workflow.nodes)} nodes, {len(workflow.edges)} edges")
    return workflow
