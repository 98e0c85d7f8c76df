"""
Health check files for the scheduled workers.

Each worker owns one JSON file under HEALTH_CHECK_DIR that Docker health
checks read. Writes go through a temp file and a rename so readers never see
a half-written document.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from shared.config import get_settings

logger = logging.getLogger(__name__)


def health_file_path(worker_name: str) -> Path:
    return Path(get_settings().HEALTH_CHECK_DIR) / f"{worker_name}_health.json"


def update_health_check(
    worker_name: str,
    last_run: datetime,
    status: str,
    **stats: Any,
) -> None:
    """
    Update the worker's health check file with the latest run statistics.

    Args:
        worker_name: File prefix, e.g. "email_notification_worker"
        last_run: Timestamp of run completion
        status: Health status ('healthy' or 'unhealthy')
        **stats: Counters of the run (sent, failed, archived_count...)
    """
    health_file = health_file_path(worker_name)
    temp_file = health_file.with_name(f"{worker_name}_health.{int(time.time())}.tmp")

    health_data = {"last_run": last_run.isoformat(), "status": status, **stats}

    try:
        health_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)
