import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException

from taskbridge.config import Settings
from taskbridge.logging_service import log_sync_event, report_error
from syncs import classroom_sync, d2l_sync, notion_calendar_sync

logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="Taskbridge")

# Run order of /sync/all
JOBS = {
    classroom_sync.JOB_NAME: classroom_sync,
    d2l_sync.JOB_NAME: d2l_sync,
    notion_calendar_sync.JOB_NAME: notion_calendar_sync,
}


# ============================================================================
# SYNC CYCLES - /sync/all runs one cycle at a time
# ============================================================================

@dataclass
class SyncCycle:
    started: Optional[datetime] = None
    finished: Optional[datetime] = None
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started and self.finished:
            return (self.finished - self.started).total_seconds()
        return None

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.results.values() if outcome["status"] == status)


_cycle_lock = asyncio.Lock()
_last_cycle = SyncCycle()


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


def _get_job(job: str):
    if job not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job}'. Known jobs: {', '.join(JOBS)}")
    return JOBS[job]


async def _run_job(name: str, module, settings: Settings) -> Dict[str, Any]:
    """Run one job of a cycle; its failure is reported and recorded, never raised."""
    try:
        logger.info(f"Cycle: running {name}")
        result = await module.run_sync(settings)
    except Exception as e:
        logger.error(f"Cycle: {name} raised {e}")
        await report_error(f"{name}_sync", e)
        return {"status": "error", "error": str(e)}

    status = "success" if result.success else "error"
    log_sync_event(f"{name}_sync", "success" if result.success else "warning", f"{result.stats.to_dict()}")
    return {"status": status, "data": result.to_dict()}


@app.get("/")
async def root():
    return {"status": "Taskbridge is running", "jobs": list(JOBS)}


@app.get("/health")
async def health_check():
    """Lock state and a summary of the last /sync/all cycle."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sync_in_progress": _cycle_lock.locked(),
        "last_sync_start": _iso(_last_cycle.started),
        "last_sync_end": _iso(_last_cycle.finished),
        "last_sync_duration_seconds": _last_cycle.duration_seconds,
        "last_sync_results": _last_cycle.results or None,
    }


@app.post("/sync/all")
async def sync_everything():
    """
    Runs every job in JOBS order. A failing job does not stop the ones after it.

    Requests arriving while a cycle runs are answered with "skipped".
    """
    global _last_cycle

    if _cycle_lock.locked():
        logger.warning("A cycle is already running, skipping")
        return {
            "status": "skipped",
            "reason": "sync_already_in_progress",
            "last_sync_start": _iso(_last_cycle.started),
        }

    async with _cycle_lock:
        cycle = SyncCycle(started=datetime.now(timezone.utc))
        settings = Settings.from_env()
        for name, module in JOBS.items():
            cycle.results[name] = await _run_job(name, module, settings)
        cycle.finished = datetime.now(timezone.utc)
        _last_cycle = cycle

    logger.info(f"Cycle finished: {cycle.count('success')} succeeded, {cycle.count('error')} failed")
    return {
        "status": "completed",
        "summary": {
            "success_count": cycle.count("success"),
            "error_count": cycle.count("error"),
            "duration_seconds": cycle.duration_seconds,
        },
        "results": cycle.results,
    }


@app.post("/sync/{job}")
async def sync_job(job: str):
    """Run one job: classroom, d2l or notion-calendar."""
    module = _get_job(job)
    try:
        result = await module.run_sync(Settings.from_env())
    except Exception as e:
        logger.error(f"{job} sync failed: {e}")
        await report_error(f"{job}_sync", e)
        raise HTTPException(status_code=500, detail=str(e))

    log_sync_event(f"{job}_sync", "success" if result.success else "warning", f"{result.stats.to_dict()}")
    return result.to_dict()


@app.post("/reset/{job}")
async def reset_job(job: str):
    """Delete everything a job created and clear its snapshots."""
    module = _get_job(job)
    try:
        result = await module.run_reset(Settings.from_env())
    except Exception as e:
        logger.error(f"{job} reset failed: {e}")
        await report_error(f"{job}_reset", e)
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_dict()
