# /leadflow/services/flow_service.py

import logging
import time
from typing import Dict, Optional, Tuple

from leadflow.config.settings import settings
from leadflow.models.flow import FlowGraph
from leadflow.services.db_service import db_service
from leadflow.workflows.errors import FlowConfigurationError
from leadflow.workflows.validator import build_flow_graph, validate_flow_references

logger = logging.getLogger(__name__)


class FlowService:
    """
    Loads flow graphs from MongoDB, validates them once, and keeps them in a
    short-lived in-process cache so edits made by admin tooling show up
    within `ttl_seconds`.

    Non-strict loading (the default) keeps a flow with dangling ids usable:
    the problems are logged here and only the turns that reach them fail.
    """

    def __init__(self, store=db_service, ttl_seconds: int = 60, strict: bool = False):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.strict = strict
        self._cache: Dict[str, Tuple[float, FlowGraph]] = {}

    async def get_flow(self, flow_id: Optional[str]) -> FlowGraph:
        """Raises FlowConfigurationError if the flow is missing or invalid."""
        if not flow_id:
            raise FlowConfigurationError(flow_id, "no flow id")

        cached = self._cache.get(flow_id)
        if cached and time.monotonic() - cached[0] < self.ttl_seconds:
            return cached[1]

        flow_doc = await self.store.get_flow_document(flow_id)
        if not flow_doc:
            raise FlowConfigurationError(flow_id, "flow not found")
        node_docs = await self.store.get_flow_nodes(flow_id)

        try:
            graph = build_flow_graph(flow_doc, node_docs, strict=self.strict)
        except FlowConfigurationError as e:
            logger.error(f"Rejected flow {flow_id}: {e} {e.problems}")
            raise

        if not self.strict:
            for failure in validate_flow_references(graph):
                logger.warning(f"Flow {flow_id} has a broken reference: {failure['message']}")

        self._cache[flow_id] = (time.monotonic(), graph)
        logger.info(f"Loaded flow {flow_id} with {len(graph.nodes)} nodes.")
        return graph

    def invalidate(self, flow_id: Optional[str] = None):
        if flow_id is None:
            self._cache.clear()
        else:
            self._cache.pop(flow_id, None)


# Globally accessible instance
flow_service = FlowService(
    db_service,
    ttl_seconds=settings.flow_cache_ttl_seconds,
    strict=settings.strict_flow_validation,
)
