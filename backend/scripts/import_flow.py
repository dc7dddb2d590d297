#!/usr/bin/env python3
"""
Imports a bot flow from a JSON file into MongoDB.

The file holds the flow document and its nodes:

    {"flow": {"flow_id": "...", "start_node_id": "...", ...}, "nodes": [{...}, ...]}

The flow is validated with the same loader the engine uses, so a flow with
dangling node ids is rejected before it reaches the database.

Usage:
    python scripts/import_flow.py flows/sample_flow.json
    python scripts/import_flow.py flows/sample_flow.json --phone-number-id 1234567890 --token-env WHATSAPP_TOKEN_MAIN
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add parent directory to path to import leadflow modules
sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv()

from leadflow.services.db_service import db_service
from leadflow.workflows.errors import FlowConfigurationError
from leadflow.workflows.validator import build_flow_graph

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def import_flow(path: Path, phone_number_id: str = None, token_env: str = None, name: str = "") -> bool:
    data = json.loads(path.read_text(encoding="utf-8"))
    flow_doc = data.get("flow") or {}
    node_docs = data.get("nodes") or []

    try:
        graph = build_flow_graph(flow_doc, node_docs, strict=True)
    except FlowConfigurationError as e:
        logger.error(f"Flow rejected: {e}")
        for problem in e.problems:
            logger.error(f"  -> {problem}")
        return False

    logger.info(f"Flow '{graph.flow_id}' is valid ({len(graph.nodes)} nodes, start at '{graph.start_node_id}').")
    await db_service.upsert_flow({**flow_doc, "flow_id": graph.flow_id}, node_docs)

    if phone_number_id:
        await db_service.upsert_business_number(phone_number_id, graph.flow_id, token_env, name)
        logger.info(f"Business number {phone_number_id} now runs flow '{graph.flow_id}'.")
    return True


def main():
    parser = argparse.ArgumentParser(description="Import a bot flow JSON file into MongoDB.")
    parser.add_argument("path", type=Path)
    parser.add_argument("--phone-number-id", help="Business phone number id to activate the flow on")
    parser.add_argument("--token-env", help="Environment variable holding that number's access token")
    parser.add_argument("--name", default="", help="Display name for the business number")
    args = parser.parse_args()

    ok = asyncio.run(import_flow(args.path, args.phone_number_id, args.token_env, args.name))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
