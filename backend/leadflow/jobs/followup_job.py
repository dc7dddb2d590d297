# /leadflow/jobs/followup_job.py

import logging
from datetime import datetime
from typing import Dict, Optional

from leadflow.services.followup_service import follow_up_scheduler

logger = logging.getLogger(__name__)


async def run_follow_up_sweep(now: Optional[datetime] = None) -> Dict[str, int]:
    """Scheduler entry point for one follow-up sweep."""
    logger.info("Scheduler starting: follow-up sweep.")
    try:
        return await follow_up_scheduler.sweep(now)
    except Exception:
        logger.error("Follow-up sweep failed.", exc_info=True)
        return {}
