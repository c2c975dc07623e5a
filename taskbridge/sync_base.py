"""
===================================================================================
SYNC BASE - Results, statistics and the shared entry-point plumbing
===================================================================================

Every job module (syncs/*) exposes `run_sync(settings)` / `run_reset(settings)`
coroutines and a CLI built from `create_cli_parser()`. Top-level entry points
catch everything, forward it to the error sink and exit non-zero.
"""

import time
import asyncio
import argparse
import traceback
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from taskbridge.config import Settings
from taskbridge.logging_service import log_sync_event, report_error, setup_logger


@dataclass
class SyncStats:
    """Statistics from a sync operation."""
    created: int = 0
    updated: int = 0
    closed: int = 0
    reopened: int = 0
    deleted: int = 0
    announced: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.closed + self.reopened + self.deleted + self.announced

    def add(self, other: "SyncStats"):
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))

    def to_dict(self) -> Dict:
        return {
            'created': self.created,
            'updated': self.updated,
            'closed': self.closed,
            'reopened': self.reopened,
            'deleted': self.deleted,
            'announced': self.announced,
            'skipped': self.skipped,
            'errors': self.errors,
            'total_processed': self.total_processed
        }


@dataclass
class SyncResult:
    """Result of a complete job run."""
    job: str
    success: bool
    stats: SyncStats = field(default_factory=SyncStats)
    contexts: List[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'job': self.job,
            'success': self.success,
            'stats': self.stats.to_dict(),
            'contexts': self.contexts,
            'elapsed_seconds': round(self.elapsed_seconds, 2),
            'error_message': self.error_message
        }


def create_cli_parser(job_name: str) -> argparse.ArgumentParser:
    """Create a standardized CLI parser for sync jobs."""
    parser = argparse.ArgumentParser(description=f'{job_name} sync job')
    parser.add_argument('--reset', action='store_true', help='Delete everything this job created and clear its snapshots')
    return parser


def run_cli(
    job_name: str,
    sync: Callable[[Settings], Awaitable[SyncResult]],
    reset: Callable[[Settings], Awaitable[SyncResult]],
    argv: Optional[List[str]] = None,
) -> int:
    """Parse arguments, run the job and map any failure to exit status 1."""
    logger = setup_logger(job_name)
    args = create_cli_parser(job_name).parse_args(argv)
    operation = reset if args.reset else sync

    async def main() -> SyncResult:
        start = time.time()
        try:
            return await operation(Settings.from_env())
        except Exception as e:
            logger.error(f"{job_name} failed: {e}\n{traceback.format_exc()}")
            await report_error(f"{job_name}_sync", e)
            return SyncResult(job=job_name, success=False, error_message=str(e), elapsed_seconds=time.time() - start)

    result = asyncio.run(main())
    if result.success:
        log_sync_event(f"{job_name}_sync", "success", f"{result.stats.to_dict()}")
    print(f"\nResult: {result.to_dict()}")
    return 0 if result.success else 1
