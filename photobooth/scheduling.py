"""
Priority-ordered, bounded-concurrency, rate-shaped work queue.

The ``PriorityWorkQueue`` sits in front of the external image generation
API.  It accepts every unit of work submitted to it and decides *when*
each one runs, subject to three rules:

1. **Priority, then FIFO.**  The queued task with the highest priority
   class runs next; ties go to the earliest submission.  A task that is
   already running is never preempted.
2. **Concurrency ceiling.**  At most ``maximum_concurrency`` tasks run at
   any instant.  A task holds its slot for its whole execution and
   releases it exactly once, whether it succeeds, fails or is cancelled.
3. **Dispatch-rate ceiling.**  At most ``maximum_dispatches_per_window``
   tasks start inside any rolling window of ``dispatch_window_seconds``.
   The upstream API enforces a requests-per-second budget that is
   stricter than "how many can run at once", so both ceilings apply.

Dispatch opportunities arise when work is submitted, when a running task
finishes, and when the rolling window advances far enough to free rate
budget (a single ``loop.call_later`` wakeup is armed for that).

The queue has no admission policy of its own.  Callers check ``size``
against a soft ceiling before submitting.

Submission returns an ``asyncio.Future`` that resolves with the work's
return value or raises the work's exception; the queue never swallows an
error.  Work runs inside a copy of the submitter's ``contextvars``
context, so log lines emitted by queued work carry the submitting
request's ``correlation_id`` and ``kiosk_identifier``.

Usage::

    queue = PriorityWorkQueue(maximum_concurrency=2)
    result = await queue.submit(functools.partial(worker.run, request), priority=1)
"""

import asyncio
import collections
import collections.abc
import contextvars
import dataclasses
import heapq
import itertools
import time
import typing

import structlog

import photobooth.exceptions

logger = structlog.get_logger()

WorkCallable = typing.Callable[[], collections.abc.Awaitable[typing.Any]]


@dataclasses.dataclass(eq=False)
class QueuedTask:
    """
    A pending or in-flight unit of work.

    Attributes:
        work: Zero-argument callable returning the awaitable to execute.
        priority: Priority class; higher values dispatch first.
        sequence_number: Monotonic submission counter, the FIFO tie-break.
        enqueued_at: Queue clock reading at submission.
        result_future: Handle given to the submitter.
        context: ``contextvars`` snapshot the work executes in.
    """

    work: WorkCallable
    priority: int
    sequence_number: int
    enqueued_at: float
    result_future: asyncio.Future
    context: contextvars.Context


class PriorityWorkQueue:
    """
    Runs submitted work under priority ordering, a concurrency ceiling and
    a rolling dispatch-rate ceiling.

    Args:
        maximum_concurrency: Maximum number of tasks running at once (C).
        dispatch_window_seconds: Length of the rolling dispatch window (I).
        maximum_dispatches_per_window: Maximum task starts inside any
            rolling window of length I (K).
        clock: Monotonic time source used for enqueue timestamps and the
            dispatch window.  Must share its time base with the event
            loop's clock, since wakeups are scheduled on the loop.
        autostart: When false the queue starts paused and accepts work
            without dispatching it until ``start`` is called.
    """

    def __init__(
        self,
        maximum_concurrency: int = 2,
        dispatch_window_seconds: float = 1.0,
        maximum_dispatches_per_window: int = 3,
        clock: typing.Callable[[], float] = time.monotonic,
        autostart: bool = True,
    ) -> None:
        if maximum_concurrency < 1:
            raise ValueError("maximum_concurrency must be at least 1.")
        if dispatch_window_seconds <= 0:
            raise ValueError("dispatch_window_seconds must be positive.")
        if maximum_dispatches_per_window < 1:
            raise ValueError("maximum_dispatches_per_window must be at least 1.")

        self._maximum_concurrency = maximum_concurrency
        self._dispatch_window_seconds = dispatch_window_seconds
        self._maximum_dispatches_per_window = maximum_dispatches_per_window
        self._clock = clock

        self._queued_entries: list[tuple[int, int, QueuedTask]] = []
        self._sequence_numbers = itertools.count()
        self._running_tasks: set[asyncio.Task] = set()
        self._recent_dispatch_times: collections.deque[float] = collections.deque()
        self._window_wakeup_handle: asyncio.TimerHandle | None = None
        self._idle_event = asyncio.Event()
        self._idle_event.set()
        self._is_paused = not autostart
        self._is_closed = False

    # ── Observability ─────────────────────────────────────────────────────

    @property
    def size(self) -> int:
        """Number of tasks waiting to be dispatched."""
        return sum(1 for _, _, queued_task in self._queued_entries if not queued_task.result_future.done())

    @property
    def pending(self) -> int:
        """Number of tasks currently running."""
        return len(self._running_tasks)

    @property
    def maximum_concurrency(self) -> int:
        return self._maximum_concurrency

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    # ── Submission ────────────────────────────────────────────────────────

    def submit(self, work: WorkCallable, priority: int = 0) -> asyncio.Future:
        """
        Queue ``work`` and return a future for its outcome.

        Cancelling the returned future before the task is dispatched
        removes it from consideration; cancelling it after dispatch does
        not stop the running work.

        Raises:
            GenerationQueueClosedError: When ``shutdown`` has been called.
        """
        if self._is_closed:
            raise photobooth.exceptions.GenerationQueueClosedError()

        loop = asyncio.get_running_loop()
        queued_task = QueuedTask(
            work=work,
            priority=priority,
            sequence_number=next(self._sequence_numbers),
            enqueued_at=self._clock(),
            result_future=loop.create_future(),
            context=contextvars.copy_context(),
        )
        heapq.heappush(self._queued_entries, (-priority, queued_task.sequence_number, queued_task))
        self._idle_event.clear()

        logger.info(
            "generation_task_enqueued",
            priority=priority,
            sequence_number=queued_task.sequence_number,
            queue_size=self.size,
            running_tasks=self.pending,
        )

        self._dispatch_ready_tasks()
        return queued_task.result_future

    async def run(self, work: WorkCallable, priority: int = 0) -> typing.Any:
        """Submit ``work`` and wait for its result."""
        return await self.submit(work, priority=priority)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def _discard_expired_dispatch_times(self, now: float) -> None:
        window_start = now - self._dispatch_window_seconds
        while self._recent_dispatch_times and self._recent_dispatch_times[0] <= window_start:
            self._recent_dispatch_times.popleft()

    def _dispatch_ready_tasks(self) -> None:
        """
        Start as many queued tasks as both ceilings allow.

        Runs synchronously, so the selection and the slot accounting for
        each dispatch happen without a suspension point in between.
        """
        if self._is_paused:
            self._refresh_idle_state()
            return

        now = self._clock()
        self._discard_expired_dispatch_times(now)

        while self._queued_entries and len(self._running_tasks) < self._maximum_concurrency:
            if len(self._recent_dispatch_times) >= self._maximum_dispatches_per_window:
                oldest_dispatch_time = self._recent_dispatch_times[0]
                self._schedule_window_wakeup(oldest_dispatch_time + self._dispatch_window_seconds - now)
                break

            _, _, queued_task = heapq.heappop(self._queued_entries)
            if queued_task.result_future.done():
                # Submitter cancelled the handle before dispatch.
                continue

            self._recent_dispatch_times.append(now)
            self._start(queued_task, now)

        self._refresh_idle_state()

    def _schedule_window_wakeup(self, delay_seconds: float) -> None:
        if self._window_wakeup_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._window_wakeup_handle = loop.call_later(max(0.0, delay_seconds), self._on_window_wakeup)

    def _on_window_wakeup(self) -> None:
        self._window_wakeup_handle = None
        self._dispatch_ready_tasks()

    def _start(self, queued_task: QueuedTask, now: float) -> None:
        logger.info(
            "generation_task_dispatched",
            priority=queued_task.priority,
            sequence_number=queued_task.sequence_number,
            wait_seconds=round(now - queued_task.enqueued_at, 3),
            running_tasks=len(self._running_tasks) + 1,
        )
        running_task = asyncio.get_running_loop().create_task(
            self._execute(queued_task),
            context=queued_task.context,
        )
        self._running_tasks.add(running_task)

    async def _execute(self, queued_task: QueuedTask) -> None:
        result_future = queued_task.result_future
        try:
            result = await queued_task.work()
        except asyncio.CancelledError:
            if not result_future.done():
                result_future.set_exception(
                    photobooth.exceptions.GenerationQueueClosedError(
                        detail="The generation task was cancelled before it finished.",
                    ),
                )
            raise
        except Exception as work_error:
            if not result_future.done():
                result_future.set_exception(work_error)
        else:
            if not result_future.done():
                result_future.set_result(result)
        finally:
            self._running_tasks.discard(asyncio.current_task())
            self._dispatch_ready_tasks()

    def _refresh_idle_state(self) -> None:
        if not self._queued_entries and not self._running_tasks:
            self._idle_event.set()
        else:
            self._idle_event.clear()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def pause(self) -> None:
        """Stop dispatching new tasks.  Running tasks are unaffected."""
        self._is_paused = True

    def start(self) -> None:
        """Resume dispatching and immediately fill any free slots."""
        self._is_paused = False
        self._dispatch_ready_tasks()

    async def wait_until_idle(self) -> None:
        """Wait until nothing is queued and nothing is running."""
        await self._idle_event.wait()

    async def shutdown(self, drain_timeout_seconds: float = 0.0) -> None:
        """
        Refuse new work, optionally drain, then abandon whatever remains.

        Queued tasks that never started have their futures failed with
        ``GenerationQueueClosedError``.  Running tasks are cancelled and
        awaited; their work observes the cancellation (and records it)
        before this method returns.

        Args:
            drain_timeout_seconds: How long to let queued and running work
                finish before abandoning it.  0 abandons immediately.
        """
        self._is_closed = True

        if drain_timeout_seconds > 0 and not self._is_paused:
            try:
                await asyncio.wait_for(self._idle_event.wait(), timeout=drain_timeout_seconds)
            except TimeoutError:
                logger.warning(
                    "generation_queue_drain_timed_out",
                    drain_timeout_seconds=drain_timeout_seconds,
                    queue_size=self.size,
                    running_tasks=self.pending,
                )

        if self._window_wakeup_handle is not None:
            self._window_wakeup_handle.cancel()
            self._window_wakeup_handle = None

        abandoned_task_count = 0
        while self._queued_entries:
            _, _, queued_task = heapq.heappop(self._queued_entries)
            if not queued_task.result_future.done():
                queued_task.result_future.set_exception(photobooth.exceptions.GenerationQueueClosedError())
                abandoned_task_count += 1

        running_tasks = list(self._running_tasks)
        for running_task in running_tasks:
            running_task.cancel()
        await asyncio.gather(*running_tasks, return_exceptions=True)

        self._refresh_idle_state()
        logger.info(
            "generation_queue_shutdown_complete",
            abandoned_queued_tasks=abandoned_task_count,
            cancelled_running_tasks=len(running_tasks),
        )
