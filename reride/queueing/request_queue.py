"""
MODULE OVERVIEW:
The request queue every outbound network call of the process goes through.

WHAT IS HAPPENING HERE:
A burst of calls is serialized (or bounded to a small concurrency) so a
rate-limited backend is not flooded. Each call becomes a QueueTask held in a
priority heap keyed by (-priority, submission order). A single dispatcher
coroutine pops ready tasks while slots are free and runs each one under a
timeout.

Lifecycle of a task:

    queued -> running -> succeeded
                      -> failed
                      -> retry-scheduled -(backoff timer)-> queued

Tasks sharing an id are collapsed: a second caller attaches to the pending
task's future instead of running the action again. `enqueue` does all its
bookkeeping synchronously, so two calls in the same tick can never both
dispatch. Callers receive `asyncio.shield(...)` of the shared future, so one
caller giving up never cancels the work the others are waiting on.

Failures carrying status 429 or 503 are handed straight back to the caller:
retrying into an active rate limit only deepens it, and the caller decides
whether to fall back to cached or degraded data.
"""
import asyncio
import enum
import heapq
import itertools
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from reride.shared.config import settings
from reride.shared.errors import ActionCancelledError, QueueClearedError, QueueClosedError
from reride.shared.retry import ErrorKind, backoff_delay, classify_error, extract_status, run_with_timeout

Action = Callable[[], Awaitable[Any]]


class TaskState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRY_SCHEDULED = "retry-scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class QueueTask:
    id: str
    action: Action
    priority: int
    max_retries: int
    timeout_s: float | None
    seq: int
    future: asyncio.Future = field(repr=False)
    attempt: int = 0
    state: TaskState = TaskState.QUEUED
    callers: int = 1


class RequestQueue:
    def __init__(
        self,
        concurrency: int | None = None,
        max_retries: int | None = None,
        base_backoff_s: float | None = None,
        max_backoff_s: float | None = None,
        request_interval_s: float | None = None,
        timeout_s: float | None = None,
    ):
        self.concurrency = max(1, concurrency if concurrency is not None else settings.QUEUE_CONCURRENCY)
        self.max_retries = max_retries if max_retries is not None else settings.QUEUE_MAX_RETRIES
        self.base_backoff_s = base_backoff_s if base_backoff_s is not None else settings.QUEUE_BASE_BACKOFF_S
        self.max_backoff_s = max_backoff_s if max_backoff_s is not None else settings.QUEUE_MAX_BACKOFF_S
        self.request_interval_s = (
            request_interval_s if request_interval_s is not None else settings.QUEUE_REQUEST_INTERVAL_S
        )
        self.timeout_s = timeout_s if timeout_s is not None else settings.QUEUE_REQUEST_TIMEOUT_S

        self._heap: list[tuple[int, int, str]] = []
        self._tasks: dict[str, QueueTask] = {}
        self._seq = itertools.count()
        self._in_flight = 0
        self._wakeup = asyncio.Event()
        self._dispatcher: asyncio.Task | None = None
        self._running_actions: set[asyncio.Task] = set()
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

        self.completed_count = 0
        self.failed_count = 0

    # ==========================
    # LIFECYCLE
    # ==========================
    async def start(self) -> None:
        self._ensure_started()

    async def shutdown(self) -> None:
        """
        Stop accepting work, reject everything not yet running, and wait for
        in-flight actions to finish. Running actions are never cancelled.
        """
        if self._closed:
            return
        self._closed = True

        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()

        for task in list(self._tasks.values()):
            if task.state in (TaskState.QUEUED, TaskState.RETRY_SCHEDULED):
                self._settle(task, error=QueueClosedError("Request queue shut down"))
        self._heap.clear()

        if self._running_actions:
            await asyncio.gather(*self._running_actions, return_exceptions=True)

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        logger.info("component=request_queue event=shutdown")

    async def __aenter__(self) -> "RequestQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_started(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    # ==========================
    # PUBLIC CONTRACT
    # ==========================
    def enqueue(
        self,
        action: Action,
        *,
        id: str | None = None,
        priority: int = 0,
        max_retries: int | None = None,
        timeout: float | None = None,
    ) -> Awaitable[Any]:
        """
        Queue `action` and return an awaitable for its eventual result.

        `action` must be safe to run more than once unless `max_retries` is 0.
        If a task with the same `id` is queued, running or waiting to retry,
        the caller is attached to it and `action` is not invoked again.
        """
        if self._closed:
            raise QueueClosedError("Request queue is shut down")
        self._ensure_started()

        task_id = id or f"req_{uuid.uuid4().hex}"
        existing = self._tasks.get(task_id)
        if existing is not None:
            existing.callers += 1
            if priority > existing.priority and existing.state in (TaskState.QUEUED, TaskState.RETRY_SCHEDULED):
                logger.debug(f"request_id={task_id} event=promote priority={existing.priority}->{priority}")
                existing.priority = priority
                if existing.state is TaskState.QUEUED:
                    self._push(existing)
            logger.debug(f"request_id={task_id} event=dedup state={existing.state.value} callers={existing.callers}")
            return asyncio.shield(existing.future)

        task = QueueTask(
            id=task_id,
            action=action,
            priority=priority,
            max_retries=self.max_retries if max_retries is None else max_retries,
            timeout_s=self.timeout_s if timeout is None else timeout,
            seq=next(self._seq),
            future=asyncio.get_running_loop().create_future(),
        )
        self._tasks[task_id] = task
        self._push(task)
        return asyncio.shield(task.future)

    async def batch(
        self,
        actions: Sequence[Action],
        *,
        priority: int = 0,
        delay: float | None = None,
    ) -> list[Any]:
        """Run `actions` one after another through the queue, pausing `delay` seconds between them."""
        pause = self.request_interval_s if delay is None else delay
        results = []
        for index, action in enumerate(actions):
            results.append(await self.enqueue(action, priority=priority))
            if index < len(actions) - 1 and pause > 0:
                await asyncio.sleep(pause)
        return results

    def clear(self) -> int:
        """Reject every task that has not started yet. Returns how many were rejected."""
        rejected = 0
        for task in list(self._tasks.values()):
            if task.state in (TaskState.QUEUED, TaskState.RETRY_SCHEDULED):
                handle = self._retry_timers.pop(task.id, None)
                if handle is not None:
                    handle.cancel()
                self._settle(task, error=QueueClearedError("Request queue cleared"))
                rejected += 1
        self._heap.clear()
        return rejected

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if t.state is TaskState.QUEUED)

    def pending_ids(self) -> list[str]:
        return list(self._tasks)

    def get_task(self, task_id: str) -> QueueTask | None:
        return self._tasks.get(task_id)

    def stats(self) -> dict[str, int]:
        states = [t.state for t in self._tasks.values()]
        return {
            "queued": states.count(TaskState.QUEUED),
            "running": states.count(TaskState.RUNNING),
            "retry_scheduled": states.count(TaskState.RETRY_SCHEDULED),
            "completed": self.completed_count,
            "failed": self.failed_count,
        }

    # ==========================
    # DISPATCH
    # ==========================
    def _push(self, task: QueueTask) -> None:
        heapq.heappush(self._heap, (-task.priority, task.seq, task.id))
        self._wakeup.set()

    def _pop_ready(self) -> QueueTask | None:
        while self._heap:
            neg_priority, seq, task_id = heapq.heappop(self._heap)
            task = self._tasks.get(task_id)
            # Entries left behind by a promotion or by an earlier task with the same id are stale
            if task is None or task.state is not TaskState.QUEUED:
                continue
            if task.seq != seq or task.priority != -neg_priority:
                continue
            return task
        return None

    async def _dispatch_loop(self) -> None:
        while True:
            while self._in_flight < self.concurrency:
                task = self._pop_ready()
                if task is None:
                    break
                self._launch(task)
            self._wakeup.clear()
            await self._wakeup.wait()

    def _launch(self, task: QueueTask) -> None:
        task.state = TaskState.RUNNING
        self._in_flight += 1
        runner = asyncio.get_running_loop().create_task(self._run(task))
        self._running_actions.add(runner)
        runner.add_done_callback(self._running_actions.discard)

    async def _run(self, task: QueueTask) -> None:
        logger.debug(f"request_id={task.id} event=start attempt={task.attempt} priority={task.priority}")
        try:
            result = await run_with_timeout(task.action, task.timeout_s)
        except asyncio.CancelledError:
            # Only a cancellation aimed at the runner itself is propagated
            runner = asyncio.current_task()
            self._handle_failure(task, ActionCancelledError(task.id))
            if runner is not None and runner.cancelling():
                raise
        except Exception as e:
            self._handle_failure(task, e)
        else:
            self._settle(task, result=result)
        finally:
            try:
                if self.request_interval_s > 0 and self._heap and not self._closed:
                    await asyncio.sleep(self.request_interval_s)
            finally:
                self._in_flight -= 1
                self._wakeup.set()

    def _handle_failure(self, task: QueueTask, error: Exception) -> None:
        kind = classify_error(error)

        if kind is ErrorKind.TRANSIENT and task.attempt < task.max_retries and not self._closed:
            delay = backoff_delay(task.attempt, self.base_backoff_s, self.max_backoff_s)
            task.attempt += 1
            task.state = TaskState.RETRY_SCHEDULED
            logger.warning(
                f"request_id={task.id} event=retry attempt={task.attempt}/{task.max_retries} "
                f"delay={delay:.2f}s reason='{error}'"
            )
            self._retry_timers[task.id] = asyncio.get_running_loop().call_later(delay, self._requeue, task)
            return

        if kind is ErrorKind.RATE_LIMITED:
            logger.warning(
                f"request_id={task.id} event=rate_limited status={extract_status(error)} "
                f"reason='surfaced without retry'"
            )
        elif kind is ErrorKind.TRANSIENT:
            logger.error(f"request_id={task.id} event=exhausted attempts={task.attempt + 1} reason='{error}'")
        else:
            logger.error(f"request_id={task.id} event=failed reason='{error}'")
        self._settle(task, error=error)

    def _requeue(self, task: QueueTask) -> None:
        self._retry_timers.pop(task.id, None)
        if self._closed or task.state is not TaskState.RETRY_SCHEDULED:
            return
        task.state = TaskState.QUEUED
        self._push(task)

    def _settle(self, task: QueueTask, result: Any = None, error: BaseException | None = None) -> None:
        if error is None:
            task.state = TaskState.SUCCEEDED
            self.completed_count += 1
        else:
            task.state = TaskState.FAILED
            self.failed_count += 1

        if self._tasks.get(task.id) is task:
            del self._tasks[task.id]

        if not task.future.done():
            if error is None:
                task.future.set_result(result)
            else:
                task.future.set_exception(error)
