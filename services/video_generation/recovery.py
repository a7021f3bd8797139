"""
Recovery Sweep - resumes tasks left in flight.

When a client comes back (page reload, process restart) some tasks may still
be PROCESSING in the ledger with nobody polling them. The sweep finds them
and hands them back to the orchestrator's polling path.

Running the sweep twice is harmless: each row is re-read before a poller is
attached, and tasks that are terminal or already polled are skipped.
"""

import asyncio
import logging
from typing import Optional

from core.best_effort import best_effort

from .orchestrator import GenerationOrchestrator, ProgressCallback
from .relocator import MediaRelocator
from .state import GenerationResult, GenerationTask, MediaKind, TaskScope
from .task_ledger import TaskLedger

logger = logging.getLogger(__name__)


class RecoverySweep:
    """
    Usage:
        sweep = RecoverySweep(orchestrator, ledger, relocator)
        results = await sweep.run(TaskScope(user_id=user_id, chat_id=chat_id))
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: TaskLedger,
        relocator: Optional[MediaRelocator] = None,
    ):
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.relocator = relocator or orchestrator.relocator

    async def run(
        self,
        scope: TaskScope,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[GenerationResult]:
        """
        Resume every PROCESSING task in `scope`, concurrently.

        Returns:
            Results of the tasks that were resumed by this call
        """
        tasks = await self.ledger.find_incomplete(scope)
        if not tasks:
            logger.info(f"No incomplete tasks for user {scope.user_id}")
            return []

        logger.info(f"Recovering {len(tasks)} incomplete task(s) for user {scope.user_id}")
        results = await asyncio.gather(*(self._recover(task, on_progress) for task in tasks))
        return [result for result in results if result is not None]

    async def _recover(
        self,
        task: GenerationTask,
        on_progress: Optional[ProgressCallback],
    ) -> Optional[GenerationResult]:
        if self.orchestrator.is_polling(task.task_id):
            logger.info(f"Task {task.task_id} already being polled, skipping")
            return None

        try:
            current = await self.ledger.get(task.task_id)
        except Exception as e:
            logger.warning(f"Cannot re-read task {task.task_id}, skipping: {type(e).__name__}: {e}")
            return None

        if current is None or current.status.is_terminal:
            logger.info(f"Task {task.task_id} no longer PROCESSING, skipping")
            return None

        return await self.orchestrator.resume(current, on_progress)

    async def relocate_finished(self, scope: TaskScope) -> int:
        """
        Retry relocation for finished tasks that kept the provider URL.

        Provider URLs expire, so this only helps shortly after the task finished.

        Returns:
            Number of tasks whose video was relocated
        """
        tasks = await self.ledger.find_unrelocated(scope)
        relocated = 0

        for task in tasks:
            try:
                if await self._relocate_task(task):
                    relocated += 1
            except Exception as e:
                logger.warning(
                    f"Relocation retry for {task.task_id} raised {type(e).__name__}: {e}"
                )

        logger.info(f"Relocated {relocated}/{len(tasks)} finished task(s) for user {scope.user_id}")
        return relocated

    async def _relocate_task(self, task: GenerationTask) -> bool:
        if not task.temporary_media_url:
            return False

        video = await self.relocator.relocate(task.temporary_media_url, MediaKind.VIDEO)
        if not video.success:
            logger.warning(f"Relocation retry for {task.task_id} failed: {video.error}")
            return False

        cover_url = None
        if task.temporary_cover_url:
            cover = await self.relocator.relocate(task.temporary_cover_url, MediaKind.IMAGE)
            cover_url = cover.permanent_url if cover.success else None

        return await best_effort(
            "ledger.update_stored_urls",
            self.ledger.update_stored_urls(task.task_id, video.permanent_url, cover_url),
            default=False,
        )
