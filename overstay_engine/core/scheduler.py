# ================================
# BACKGROUND SCHEDULER (core/scheduler.py)
# ================================

import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional, Callable
import traceback

from overstay_engine.core.database import get_db_session
from overstay_engine.config import settings

logger = logging.getLogger(__name__)

class BackgroundScheduler:
    """Simple background task scheduler for periodic tasks"""

    def __init__(self):
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.running = False
        self._task_handles: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def add_task(
        self,
        name: str,
        func: Callable,
        interval_seconds: int,
        initial_delay: int = 0,
        enabled: bool = True
    ):
        """Add a periodic task to the scheduler"""
        self.tasks[name] = {
            "func": func,
            "interval": interval_seconds,
            "initial_delay": initial_delay,
            "enabled": enabled,
            "last_run": None,
            "next_run": None,
            "run_count": 0,
            "skip_count": 0,
            "error_count": 0,
            "last_error": None,
            "last_result": None
        }
        logger.info(f"Scheduled task '{name}' with interval {interval_seconds}s")

    async def start(self):
        """Start the scheduler"""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        logger.info("Starting background scheduler")

        for task_name, task_config in self.tasks.items():
            if task_config["enabled"]:
                self._task_handles[task_name] = asyncio.create_task(
                    self._run_task_loop(task_name)
                )

    async def stop(self):
        """Stop the scheduler"""
        self.running = False
        logger.info("Stopping background scheduler")

        for task_name, task_handle in self._task_handles.items():
            task_handle.cancel()
            try:
                await task_handle
            except asyncio.CancelledError:
                pass

        self._task_handles.clear()
        logger.info("Background scheduler stopped")

    def _lock(self, task_name: str) -> asyncio.Lock:
        return self._locks.setdefault(task_name, asyncio.Lock())

    def is_task_running(self, task_name: str) -> bool:
        return self._lock(task_name).locked()

    async def run_exclusive(self, task_name: str, func: Callable) -> Dict[str, Any]:
        """
        Await ``func()`` under the task's lock.

        Runs under the same name never overlap: if one is already in progress
        this returns ``{"started": False}`` without waiting.
        """
        lock = self._lock(task_name)
        if lock.locked():
            if task_name in self.tasks:
                self.tasks[task_name]["skip_count"] += 1
            logger.warning(f"Task '{task_name}' is already running, skipping this trigger")
            return {"started": False, "result": None}

        async with lock:
            result = await func()
        return {"started": True, "result": result}

    async def run_task_now(self, task_name: str) -> Dict[str, Any]:
        """Run a registered task immediately, skipping if it is already running"""
        if task_name not in self.tasks:
            raise ValueError(f"Task '{task_name}' not found")

        task_config = self.tasks[task_name]

        async def tracked():
            logger.info(f"Running task '{task_name}'")
            start_time = datetime.now(timezone.utc)

            try:
                result = await task_config["func"]()
            except Exception as e:
                task_config["error_count"] += 1
                task_config["last_error"] = {
                    "time": datetime.now(timezone.utc),
                    "error": str(e),
                    "traceback": traceback.format_exc()
                }
                raise

            task_config["last_run"] = start_time
            task_config["run_count"] += 1
            task_config["last_result"] = result

            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info(f"Task '{task_name}' completed in {duration:.2f}s")
            return result

        return await self.run_exclusive(task_name, tracked)

    async def _run_task_loop(self, task_name: str):
        """Run a task in a loop"""
        task_config = self.tasks[task_name]

        if task_config["initial_delay"] > 0:
            logger.info(f"Task '{task_name}' waiting {task_config['initial_delay']}s before first run")
            await asyncio.sleep(task_config["initial_delay"])

        while self.running and task_config["enabled"]:
            task_config["next_run"] = datetime.now(timezone.utc) + timedelta(
                seconds=task_config["interval"]
            )
            try:
                await self.run_task_now(task_name)
            except Exception as e:
                logger.error(f"Error in scheduled task '{task_name}': {e}")
                logger.debug(traceback.format_exc())

            await asyncio.sleep(task_config["interval"])

    def get_task_status(self, task_name: Optional[str] = None) -> Dict[str, Any]:
        """Get status of scheduled tasks"""
        if task_name:
            if task_name not in self.tasks:
                return {"error": f"Task '{task_name}' not found"}

            task = self.tasks[task_name]
            return {
                "name": task_name,
                "enabled": task["enabled"],
                "running": self.is_task_running(task_name),
                "interval": task["interval"],
                "last_run": task["last_run"].isoformat() if task["last_run"] else None,
                "next_run": task["next_run"].isoformat() if task["next_run"] else None,
                "run_count": task["run_count"],
                "skip_count": task["skip_count"],
                "error_count": task["error_count"],
                "last_error": task["last_error"]
            }

        return {
            name: self.get_task_status(name)
            for name in self.tasks
        }

    def enable_task(self, task_name: str):
        """Enable a task"""
        if task_name not in self.tasks:
            raise ValueError(f"Task '{task_name}' not found")

        self.tasks[task_name]["enabled"] = True
        logger.info(f"Enabled task '{task_name}'")

    def disable_task(self, task_name: str):
        """Disable a task"""
        if task_name not in self.tasks:
            raise ValueError(f"Task '{task_name}' not found")

        self.tasks[task_name]["enabled"] = False
        logger.info(f"Disabled task '{task_name}'")

# Global scheduler instance
scheduler = BackgroundScheduler()

OVERSTAY_DETECTION_TASK = "overstay_detection"

# ================================
# SCHEDULED TASKS
# ================================

def _detect_overstays_sync():
    from overstay_engine.services.overstay_detection_service import OverstayDetectionService

    with get_db_session() as db:
        return OverstayDetectionService.detect_overstays(db)

async def run_overstay_detection():
    """Scheduled task: daily sweep for expired storage bookings"""
    # Blocking database work runs off the event loop
    return await asyncio.to_thread(_detect_overstays_sync)

# ================================
# SCHEDULER INITIALIZATION
# ================================

def initialize_scheduler():
    """Initialize the scheduler with default tasks"""

    scheduler.add_task(
        name=OVERSTAY_DETECTION_TASK,
        func=run_overstay_detection,
        interval_seconds=settings.OVERSTAY_DETECTION_INTERVAL_SECONDS,
        initial_delay=settings.OVERSTAY_DETECTION_INITIAL_DELAY_SECONDS,
        enabled=settings.ENABLE_OVERSTAY_DETECTION
    )

    logger.info("Scheduler initialized with default tasks")
