"""Cooperative task scheduler and operator gating.

Every registered task runs in its own loop on the event loop, so a 1-second
chat poll and a 5-minute payout intake overlap freely. A task never overlaps
with itself: a trigger that arrives while the previous iteration is still in
flight is skipped. Pollers give no ordering guarantee across tasks; the
services they drive are idempotent instead.
"""
import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .logging_setup import logger

TaskFn = Callable[[], Awaitable[Any]]
ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]


class Mode(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class OperatorGate:
    """Yes/no gate in front of money-relevant actions.

    Automatic mode always approves. Manual mode asks ``confirm``; coroutine
    callbacks are awaited, blocking callables (e.g. a console prompt) run in
    a worker thread so the scheduler keeps ticking while the operator decides.
    Without a callback, manual mode declines.
    """

    def __init__(self, mode: Mode = Mode.AUTOMATIC, confirm: Optional[ConfirmCallback] = None):
        self.mode = Mode(mode)
        self.confirm = confirm

    async def approve(self, message: str) -> bool:
        if self.mode == Mode.AUTOMATIC:
            return True
        if self.confirm is None:
            logger.warning(f"Manual mode without confirmation channel | declined action={message!r}")
            return False
        if inspect.iscoroutinefunction(self.confirm):
            approved = await self.confirm(message)
        else:
            approved = await asyncio.to_thread(self.confirm, message)
        logger.info(f"Operator decision | approved={bool(approved)} action={message!r}")
        return bool(approved)


@dataclass
class ScheduledTask:
    name: str
    fn: TaskFn
    interval: float
    run_immediately: bool = False
    running: bool = False
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_error: Optional[str] = None
    handle: Optional[asyncio.Task] = None


class TaskOrchestrator:
    def __init__(self, *, shutdown_grace: float = 5.0):
        self.shutdown_grace = shutdown_grace
        self._tasks: Dict[str, ScheduledTask] = {}
        self._one_time: List[Tuple[str, TaskFn]] = []
        self._shutdown_hooks: List[Tuple[str, Callable[[], Any]]] = []
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def tasks(self) -> Dict[str, ScheduledTask]:
        return dict(self._tasks)

    def add_task(self, name: str, fn: TaskFn, interval: float, run_immediately: bool = False) -> None:
        if name in self._tasks:
            raise ValueError(f"Task {name!r} already registered")
        if interval <= 0:
            raise ValueError(f"Task {name!r} needs a positive interval")
        self._tasks[name] = ScheduledTask(name=name, fn=fn, interval=interval, run_immediately=run_immediately)

    def add_one_time(self, name: str, fn: TaskFn) -> None:
        """Register a task awaited once by :meth:`start` before periodic loops begin."""
        self._one_time.append((name, fn))

    def add_shutdown_hook(self, name: str, fn: Callable[[], Any]) -> None:
        """Register cleanup run by :meth:`stop`, in registration order."""
        self._shutdown_hooks.append((name, fn))

    async def run_now(self, name: str) -> bool:
        """Run one iteration of ``name`` immediately; False if it was already running."""
        return await self._run_once(self._tasks[name])

    async def _run_once(self, task: ScheduledTask) -> bool:
        if task.running:
            task.skipped += 1
            logger.debug(f"Task still running, skipping trigger | task={task.name}")
            return False
        task.running = True
        try:
            await task.fn()
            task.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failures += 1
            task.last_error = repr(e)
            logger.exception(f"Task failed | task={task.name} error={e}")
        finally:
            task.running = False
        return True

    async def _loop(self, task: ScheduledTask) -> None:
        if task.run_immediately:
            await self._run_once(task)
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=task.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self._run_once(task)

    async def start(self) -> None:
        """Run one-time tasks, then start every periodic loop."""
        if self._running:
            return
        self._stop_event.clear()
        self._running = True
        for name, fn in self._one_time:
            try:
                await fn()
                logger.info(f"One-time task finished | task={name}")
            except Exception as e:
                logger.exception(f"One-time task failed | task={name} error={e}")
        for task in self._tasks.values():
            task.handle = asyncio.create_task(self._loop(task), name=f"p2ptrader:{task.name}")
        logger.info(f"Orchestrator started | tasks={list(self._tasks)}")

    async def wait(self) -> None:
        """Block until :meth:`stop` is called."""
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Stop loops, cancel stragglers in reverse order, then run shutdown hooks."""
        if not self._running:
            return
        self._stop_event.set()
        handles = [t.handle for t in self._tasks.values() if t.handle is not None]
        if handles:
            await asyncio.wait(handles, timeout=self.shutdown_grace)
        for task in reversed(list(self._tasks.values())):
            if task.handle is not None and not task.handle.done():
                logger.warning(f"Cancelling task after grace period | task={task.name}")
                task.handle.cancel()
                try:
                    await task.handle
                except asyncio.CancelledError:
                    pass
            task.handle = None
        for name, hook in self._shutdown_hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Shutdown hook failed | hook={name} error={e}")
        self._running = False
        logger.info("Orchestrator stopped")
