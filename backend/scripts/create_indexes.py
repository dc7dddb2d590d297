#!/usr/bin/env python3
"""
Creates every MongoDB index the bot relies on.

The API also does this on startup; this script is for provisioning a fresh
database ahead of the first deploy.

Usage:
    python scripts/create_indexes.py
"""

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add parent directory to path to import leadflow modules
sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv()

from leadflow.services.db_service import db_service

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def create_indexes() -> bool:
    if not await db_service.health_check():
        logger.error("MongoDB is not reachable. Check MONGO_URI.")
        return False
    await db_service.create_indexes()
    db_service.client.close()
    return True


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(create_indexes()) else 1)
