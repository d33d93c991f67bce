"""
Background job tracking for contribution and MCF runs.

Each (portal, job kind) pair moves through ``idle -> running ->
completed | error``. Only one run per pair may be in flight; asking to
start another returns the in-flight snapshot instead.

Usage:
    runner = JobRunner(on_event=ws_manager.broadcast)
    snapshot = runner.start(portal_id, MCF, work)   # work(state, notify)
    runner.status(portal_id, MCF)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from scripts.lib.errors import AttributionError, JobAlreadyRunningError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import now_iso

logger = setup_logger("job_runner")

IDLE = "idle"
RUNNING = "running"
COMPLETED = "completed"
ERROR = "error"
TERMINAL = (COMPLETED, ERROR)

CONTRIBUTION = "contribution"
MCF = "mcf"
JOB_KINDS = (CONTRIBUTION, MCF)

COUNTERS = ("processed", "converting", "updated", "failed", "skipped_no_history")


@dataclass
class JobState:
    """Progress of one job. Counters are frozen once the job finishes."""

    tenant: str
    kind: str
    status: str = IDLE
    processed: int = 0
    converting: int = 0
    updated: int = 0
    failed: int = 0
    skipped_no_history: int = 0
    property_created: bool = False
    message: Optional[str] = None
    error_code: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self.status == RUNNING

    def _check_open(self):
        if self.status in TERMINAL:
            raise RuntimeError(f"{self.kind} job for portal {self.tenant} already finished")

    def incr(self, counter: str, n: int = 1):
        if counter not in COUNTERS:
            raise ValueError(f"Unknown counter {counter!r}")
        self._check_open()
        setattr(self, counter, getattr(self, counter) + n)

    def set(self, counter: str, value: int):
        if counter not in COUNTERS:
            raise ValueError(f"Unknown counter {counter!r}")
        self._check_open()
        setattr(self, counter, value)

    def complete(self, result: Optional[Dict[str, Any]] = None, message: str = None):
        self._check_open()
        self.status = COMPLETED
        self.result = result
        if message is not None:
            self.message = message
        self.finished_at = now_iso()

    def fail(self, code: str, message: str):
        self._check_open()
        self.status = ERROR
        self.error_code = code
        self.message = message
        self.finished_at = now_iso()

    def snapshot(self) -> Dict[str, Any]:
        """Wire-facing progress snapshot."""
        return {
            "portalId": self.tenant,
            "kind": self.kind,
            "status": self.status,
            "running": self.running,
            "processed": self.processed,
            "converting": self.converting,
            "updated": self.updated,
            "failed": self.failed,
            "skippedNoHistory": self.skipped_no_history,
            "propertyCreated": self.property_created,
            "message": self.message,
            "errorCode": self.error_code,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


class JobStore:
    """In-memory job table keyed by (tenant, kind)."""

    def __init__(self):
        self._jobs: Dict[Tuple[str, str], JobState] = {}

    def get(self, tenant: str, kind: str) -> JobState:
        """Current state, or a fresh idle one if the pair never ran."""
        return self._jobs.get((tenant, kind)) or JobState(tenant=tenant, kind=kind)

    def begin(self, tenant: str, kind: str) -> JobState:
        """
        Register a new running job, superseding any finished one.

        Raises:
            JobAlreadyRunningError: a job for the pair is still running.
        """
        current = self._jobs.get((tenant, kind))
        if current is not None and current.running:
            raise JobAlreadyRunningError(tenant, kind)
        state = JobState(tenant=tenant, kind=kind, status=RUNNING, started_at=now_iso())
        self._jobs[(tenant, kind)] = state
        return state


Work = Callable[[JobState, Callable[[], Awaitable[None]]], Awaitable[Optional[Dict[str, Any]]]]
EventSink = Callable[[Dict[str, Any]], Awaitable[None]]


class JobRunner:
    """Runs jobs as asyncio tasks against a :class:`JobStore`."""

    def __init__(self, store: JobStore = None, on_event: EventSink = None):
        self.store = store or JobStore()
        self._on_event = on_event
        self._tasks: Set[asyncio.Task] = set()

    def status(self, tenant: str, kind: str) -> Dict[str, Any]:
        return self.store.get(tenant, kind).snapshot()

    def start(self, tenant: str, kind: str, work: Work) -> Dict[str, Any]:
        """
        Start ``work`` in the background unless the pair is already running.

        Must be called from inside a running event loop.

        Returns:
            Snapshot of the new run, or of the in-flight one.
        """
        try:
            state = self.store.begin(tenant, kind)
        except JobAlreadyRunningError:
            logger.info("%s job already running for portal %s", kind, tenant)
            return self.status(tenant, kind)

        task = asyncio.create_task(self._execute(state, work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return state.snapshot()

    async def run(self, tenant: str, kind: str, work: Work) -> JobState:
        """
        Run ``work`` to completion in the caller's task.

        Raises:
            JobAlreadyRunningError: the pair is already running.
        """
        state = self.store.begin(tenant, kind)
        await self._execute(state, work)
        return state

    async def join(self):
        """Wait for every background job started by this runner."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def _emit(self, event: str, state: JobState):
        if self._on_event is None:
            return
        try:
            await self._on_event({"event": event, "data": state.snapshot()})
        except Exception as e:
            logger.warning("Failed to publish %s for portal %s: %s", event, state.tenant, e)

    async def _execute(self, state: JobState, work: Work):
        logger.info("Starting %s job for portal %s", state.kind, state.tenant)
        await self._emit("job_started", state)

        async def notify():
            await self._emit("job_progress", state)

        try:
            result = await work(state, notify)
        except AttributionError as e:
            logger.error(
                "%s job for portal %s failed [%s]: %s",
                state.kind, state.tenant, e.code, e.message,
            )
            state.fail(e.code, e.message)
            await self._emit("job_failed", state)
            return
        except Exception as e:
            logger.exception("%s job for portal %s crashed", state.kind, state.tenant)
            state.fail("INTERNAL_ERROR", f"{type(e).__name__}: {e}")
            await self._emit("job_failed", state)
            return

        state.complete(result)
        logger.info(
            "%s job for portal %s completed: processed=%d updated=%d failed=%d",
            state.kind, state.tenant, state.processed, state.updated, state.failed,
        )
        await self._emit("job_completed", state)
