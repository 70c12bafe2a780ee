"""
AI Task Orchestrator - generic async job runner over AITask rows.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from core.entities import AITask, TaskStatus, utcnow
from core.errors import AIError, AIInvocationError, AITimeout, DuplicateRowError
from services.config import PipelineTunables, load_tunables
from services.llm import AIFunction
from services.scheduler import sleep_or_stop
from services.store import Store

logger = logging.getLogger(__name__)


class AITaskOrchestrator:
    """
    Executes queued AITasks with retry, backoff and per-type timeouts.

    A task is claimed by flipping its status queued -> running with a
    conditional update; only the worker whose update lands runs it. From
    running a task moves only to succeeded, failed, or back to queued for a
    retry.
    """

    def __init__(
        self,
        store: Store,
        ai_function: AIFunction,
        tunables: Optional[PipelineTunables] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ai_function = ai_function
        self.base_tunables = tunables or PipelineTunables()
        self.clock = clock

    async def _tunables(self) -> PipelineTunables:
        return await load_tunables(self.store, self.base_tunables)

    async def submit(
        self,
        task_type: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Queue a task and return its id. Submitting twice with the same
        dedup key (argument or ``payload["dedup_key"]``) returns the first
        task's id.
        """
        dedup_key = dedup_key or payload.get("dedup_key")
        if dedup_key:
            existing = await self.store.find_one(AITask, {"dedup_key": dedup_key})
            if existing:
                logger.debug(f"Task with dedup key {dedup_key} already exists", extra={"task_id": existing.id})
                return existing.id

        tunables = await self._tunables()
        task = AITask(
            type=task_type,
            input=payload,
            dedup_key=dedup_key,
            max_attempts=max_attempts or tunables.ai_max_attempts,
            available_at=self.clock(),
        )
        try:
            await self.store.create(task)
        except DuplicateRowError:
            existing = await self.store.find_one(AITask, {"dedup_key": dedup_key})
            if existing is None:
                raise
            return existing.id

        logger.info(f"Queued {task_type} task", extra={"task_id": task.id, "task_type": task_type})
        return task.id

    async def claim(self, task_id: str) -> Optional[AITask]:
        now = self.clock()
        return await self.store.update(
            AITask,
            task_id,
            {"status": TaskStatus.RUNNING, "started_at": now},
            expected={"status": TaskStatus.QUEUED, "available_at__lte": now},
        )

    async def claim_next(self, batch: int = 5) -> Optional[AITask]:
        candidates = await self.store.find_many(
            AITask,
            {"status": TaskStatus.QUEUED, "available_at__lte": self.clock()},
            order_by=["available_at", "created_at"],
            limit=batch,
        )
        for candidate in candidates:
            claimed = await self.claim(candidate.id)
            if claimed:
                return claimed
        return None

    async def execute(self, task: AITask, tunables: Optional[PipelineTunables] = None) -> Optional[AITask]:
        """
        Run a claimed task to its next state.
        """
        tunables = tunables or await self._tunables()
        timeout = tunables.ai_timeout_for(task.type)

        try:
            output = await asyncio.wait_for(self.ai_function.invoke(task.type, task.input), timeout=timeout)
            if not isinstance(output, dict):
                raise AIInvocationError(f"AI function returned {type(output).__name__}, expected an object")
        except asyncio.TimeoutError:
            error: AIError = AITimeout(f"{task.type} task timed out after {timeout}s")
        except AIError as e:
            error = e
        except Exception as e:
            # The AI function is a black box; anything it raises is an invocation failure.
            error = AIInvocationError(f"{type(e).__name__}: {e}")
        else:
            return await self._complete(task, output)

        return await self._fail(task, error)

    async def run_once(self) -> bool:
        """
        Claim and execute at most one task. Returns False when nothing was claimable.
        """
        tunables = await self._tunables()
        task = await self.claim_next()
        if task is None:
            return False
        await self.execute(task, tunables)
        return True

    async def run(self, stop_event: asyncio.Event, workers: Optional[int] = None) -> None:
        """Worker loop: N concurrent workers until stop_event is set."""
        count = workers or (await self._tunables()).ai_workers
        logger.info(f"Starting {count} AI task workers")
        await asyncio.gather(*(self._worker(i, stop_event) for i in range(count)))

    async def _worker(self, index: int, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                worked = await self.run_once()
            except Exception as e:
                logger.exception(f"AI worker {index} error: {e}", extra={"worker": index})
                worked = False

            if not worked:
                poll = (await self._tunables()).ai_poll_interval_seconds
                await sleep_or_stop(stop_event, poll)

    async def wait_for(
        self,
        task_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> AITask:
        """
        Poll until the task is succeeded or failed.

        Raises:
            AITimeout: if the task is still pending when the timeout expires.
            AIInvocationError: if the task does not exist.
        """
        tunables = await self._tunables()
        timeout = tunables.ai_wait_timeout_seconds if timeout is None else timeout
        poll_interval = tunables.ai_poll_interval_seconds if poll_interval is None else poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            task = await self.store.get_by_id(AITask, task_id)
            if task is None:
                raise AIInvocationError(f"Task {task_id} not found")
            if task.status.is_terminal:
                return task
            if loop.time() >= deadline:
                raise AITimeout(f"Task {task_id} still {task.status.value} after {timeout}s")
            await asyncio.sleep(poll_interval)

    async def recover_stale(self, grace_seconds: float = 60.0) -> int:
        """
        Requeue (or fail) tasks whose worker vanished while running.
        """
        tunables = await self._tunables()
        now = self.clock()
        recovered = 0

        for task in await self.store.find_many(AITask, {"status": TaskStatus.RUNNING}):
            limit = timedelta(seconds=tunables.ai_timeout_for(task.type) + grace_seconds)
            if task.started_at and task.started_at + limit < now:
                if await self._fail(task, AITimeout("Worker lost while running task")):
                    recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stale AI tasks")
        return recovered

    async def task_stats(self) -> Dict[str, int]:
        return {status.value: await self.store.count(AITask, {"status": status}) for status in TaskStatus}

    async def _complete(self, task: AITask, output: Dict[str, Any]) -> Optional[AITask]:
        updated = await self.store.update(
            AITask,
            task.id,
            {
                "status": TaskStatus.SUCCEEDED,
                "output": output,
                "error": None,
                "attempts": task.attempts + 1,
                "completed_at": self.clock(),
            },
            expected={"status": TaskStatus.RUNNING},
        )
        extra = {"task_id": task.id, "task_type": task.type}
        if updated is None:
            logger.warning(f"{task.type} task finished after it left running, result dropped", extra=extra)
        else:
            logger.info(f"{task.type} task succeeded", extra=extra)
        return updated

    async def _fail(self, task: AITask, error: AIError) -> Optional[AITask]:
        tunables = await self._tunables()
        attempts = task.attempts + 1
        now = self.clock()

        if attempts < task.max_attempts:
            delay = tunables.ai_backoff_seconds * (2 ** (attempts - 1))
            logger.warning(
                f"{task.type} task attempt {attempts}/{task.max_attempts} failed: {error}; retry in {delay}s",
                extra={"task_id": task.id, "task_type": task.type},
            )
            return await self.store.update(
                AITask,
                task.id,
                {
                    "status": TaskStatus.QUEUED,
                    "attempts": attempts,
                    "error": str(error),
                    "available_at": now + timedelta(seconds=delay),
                    "started_at": None,
                },
                expected={"status": TaskStatus.RUNNING},
            )

        logger.error(
            f"{task.type} task failed after {attempts} attempts: {error}",
            extra={"task_id": task.id, "task_type": task.type},
        )
        return await self.store.update(
            AITask,
            task.id,
            {
                "status": TaskStatus.FAILED,
                "attempts": attempts,
                "error": str(error),
                "completed_at": now,
            },
            expected={"status": TaskStatus.RUNNING},
        )
