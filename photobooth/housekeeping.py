"""
Periodic housekeeping: stale session records and stale output files.

Each sweep is a plain function that can be invoked directly (tests run a
single cycle this way).  ``PeriodicJob`` runs one of them on the event
loop every interval, surviving failures of individual runs.  The jobs
share nothing but the stores they clean.
"""

import asyncio
import collections.abc
import datetime
import typing

import structlog

import photobooth.metrics
import photobooth.services.output_storage

logger = structlog.get_logger()

SweepAction = typing.Callable[[], collections.abc.Awaitable[int]]


def sweep_stale_sessions(
    metrics_store: photobooth.metrics.KioskMetricsStore,
    retention_seconds: float,
    now: datetime.datetime | None = None,
) -> int:
    """
    Remove every session created more than ``retention_seconds`` ago,
    whatever its status, and return how many were removed.
    """
    reference_time = now or photobooth.metrics.utc_now()
    cutoff = reference_time - datetime.timedelta(seconds=retention_seconds)
    return metrics_store.sweep_sessions_created_before(cutoff)


async def sweep_stale_outputs(
    output_sink: photobooth.services.output_storage.OutputSink,
    retention_seconds: float,
    now: datetime.datetime | None = None,
) -> int:
    """Delete outputs last modified more than ``retention_seconds`` ago."""
    reference_time = now or photobooth.metrics.utc_now()
    cutoff = reference_time - datetime.timedelta(seconds=retention_seconds)
    deleted_names = await output_sink.delete_files_older_than(cutoff)
    return len(deleted_names)


def build_session_sweep_action(
    metrics_store: photobooth.metrics.KioskMetricsStore,
    retention_seconds: float,
) -> SweepAction:
    async def sweep_sessions() -> int:
        return sweep_stale_sessions(metrics_store, retention_seconds)

    return sweep_sessions


def build_output_sweep_action(
    output_sink: photobooth.services.output_storage.OutputSink,
    retention_seconds: float,
) -> SweepAction:
    async def sweep_outputs() -> int:
        return await sweep_stale_outputs(output_sink, retention_seconds)

    return sweep_outputs


class PeriodicJob:
    """
    Runs ``action`` every ``interval_seconds`` until stopped.

    The first run happens one interval after ``start``.  An exception
    from a run is logged and the loop carries on; cancellation ends the
    loop.
    """

    def __init__(self, name: str, interval_seconds: float, action: SweepAction) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self.name = name
        self._interval_seconds = interval_seconds
        self._action = action
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run the action a single time and log the result."""
        removed_count = await self._action()
        logger.info("housekeeping_sweep_completed", job=self.name, removed=removed_count)
        return removed_count

    async def _run_forever(self) -> None:
        logger.info("housekeeping_job_started", job=self.name, interval_seconds=self._interval_seconds)
        try:
            while True:
                await asyncio.sleep(self._interval_seconds)
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as sweep_error:
                    logger.error(
                        "housekeeping_sweep_failed",
                        job=self.name,
                        error_type=type(sweep_error).__name__,
                        error=str(sweep_error),
                        exc_info=True,
                    )
        except asyncio.CancelledError:
            logger.info("housekeeping_job_stopped", job=self.name)
            raise

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run_forever(), name=f"housekeeping:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
