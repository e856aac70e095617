#!/usr/bin/env python3
"""
Worker Pool Module for KEEL

Blocking calls (directory scans, stat/rename/unlink, fsync, bcrypt) run on a
thread pool so that one request waiting on the disk or on a password hash
does not stall the event loop for everybody else.
"""

import asyncio
import functools
import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Thread pool settings"""
    max_workers: int = 16
    task_timeout: Optional[float] = 300.0  # seconds; None waits forever
    thread_name_prefix: str = "keel-worker"


@dataclass
class TaskMetrics:
    """Counters kept by the pool"""
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    failures_by_task: Counter = field(default_factory=Counter)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def success_rate(self) -> float:
        finished = self.succeeded + self.failed + self.timed_out
        return 100.0 * self.succeeded / finished if finished else 0.0

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at


class WorkerPool:
    """
    Thread pool wrapper used by every blocking operation.

    A failed call is never retried. Whatever the function raises reaches the
    awaiting caller unchanged, so typed errors keep their type and disk errors
    surface on the first attempt.

    Args:
        config: WorkerConfig, or None for the defaults
    """

    def __init__(self, config: Optional[WorkerConfig] = None):
        self.config = config or WorkerConfig()
        self.metrics = TaskMetrics()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False
        self._active = 0
        self._start_lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._executor is not None

    async def start(self):
        """Create the executor; calling it twice is harmless"""
        with self._start_lock:
            if self._executor is not None:
                return
            self._closed = False
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix=self.config.thread_name_prefix,
            )
        logger.info(f"Worker pool up: {self.config.max_workers} threads")

    async def shutdown(self, wait: bool = True):
        """
        Stop accepting work and release the threads.

        Args:
            wait: Block until running calls have returned
        """
        self._closed = True
        with self._start_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.info(f"Worker pool down after {self.metrics.submitted} tasks")

    async def submit_task(self, task_id: str, func: Callable, *args, **kwargs) -> Any:
        """
        Run ``func(*args, **kwargs)`` on a worker thread and await its result.

        The pool is started on first use when nobody started it explicitly.

        Raises:
            RuntimeError: The pool has been shut down
            asyncio.TimeoutError: The call outlived ``task_timeout``
            Exception: Whatever ``func`` raised
        """
        if self._closed:
            raise RuntimeError(f"worker pool closed, cannot run {task_id}")
        if self._executor is None:
            await self.start()

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

        self.metrics.submitted += 1
        self._active += 1
        began = time.monotonic()
        try:
            result = await asyncio.wait_for(future, timeout=self.config.task_timeout)
        except asyncio.TimeoutError:
            self.metrics.timed_out += 1
            self.metrics.failures_by_task[task_id] += 1
            logger.warning(f"{task_id}: no result after {self.config.task_timeout}s")
            raise
        except Exception as e:
            self.metrics.failed += 1
            self.metrics.failures_by_task[task_id] += 1
            logger.debug(f"{task_id} raised {e!r}")
            raise
        finally:
            self._active -= 1

        self.metrics.succeeded += 1
        logger.debug(f"{task_id} took {time.monotonic() - began:.3f}s")
        return result

    def get_metrics(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "submitted": m.submitted,
            "succeeded": m.succeeded,
            "failed": m.failed,
            "timed_out": m.timed_out,
            "active": self._active,
            "success_rate": m.success_rate,
            "uptime": m.uptime,
            "max_workers": self.config.max_workers,
            "failures_by_task": dict(m.failures_by_task),
        }
