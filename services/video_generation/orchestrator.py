"""
Generation Orchestrator.

Drives one generation through its phases:

    ADMITTED -> CREATED -> POLLING -> RELOCATING -> COMPLETE
                                  +-> FAILED

- Admission: per-group concurrency and cooldown (core.admission)
- Creation: provider task, recorded in the ledger
- Polling: provider statuses forwarded to the caller and persisted
- Relocation: media copied to permanent storage; failure keeps the provider URL

Ledger writes are best-effort and never change the caller's result.
Progress callbacks may be plain functions or coroutines; if one raises, the
error is logged and the generation carries on.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from core.admission import GroupAdmission
from core.best_effort import best_effort
from core.catalog import GroupPolicy, ModelCatalog, ModelGroup, VideoModel
from core.errors import (
    AuthRequiredError,
    ErrorCode,
    UnsupportedInputError,
    VideoGenerationError,
)
from services.auth import Session, SessionProvider

from .client import ProviderStatus, VodAigcClient
from .relocator import MediaRelocator
from .state import (
    GenerationRequest,
    GenerationResult,
    GenerationTask,
    MediaKind,
    StatusUpdate,
    StreamSummary,
    TaskPhase,
    TaskStatus,
    utcnow,
)
from .task_ledger import TaskLedger

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[StatusUpdate], Union[None, Awaitable[None]]]
StreamProgressCallback = Callable[[StatusUpdate, int, int], Union[None, Awaitable[None]]]
CompleteCallback = Callable[[StreamSummary], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Union[None, Awaitable[None]]]


class GenerationOrchestrator:
    """
    Runs video generations against the provider with admission control.

    Usage:
        orchestrator = GenerationOrchestrator(
            client=VodAigcClient(config.vod),
            ledger=TaskLedger(db_pool),
            relocator=MediaRelocator(storage, config.storage),
            sessions=SupabaseSessionProvider(config.supabase),
            catalog=ModelCatalog.load(config.models_path),
        )

        result = await orchestrator.generate("Kling-2.1", GenerationRequest(prompt="..."))

        summary = await orchestrator.generate_stream(
            "Kling-2.1",
            GenerationRequest(prompt="..."),
            count=3,
            on_progress=lambda update, index, total: print(index, update.progress),
        )
    """

    def __init__(
        self,
        client: VodAigcClient,
        ledger: TaskLedger,
        relocator: MediaRelocator,
        sessions: SessionProvider,
        catalog: ModelCatalog,
        admission: Optional[GroupAdmission] = None,
        default_count: int = 1,
    ):
        self.client = client
        self.ledger = ledger
        self.relocator = relocator
        self.sessions = sessions
        self.catalog = catalog
        self.admission = admission or GroupAdmission()
        self.default_count = default_count

        # Task ids currently being polled in this process
        self._pollers: set[str] = set()

    # --------------------------------------------------------------------------------
    # Public API
    # --------------------------------------------------------------------------------

    async def generate(
        self,
        model_id: str,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        """
        Generate one video and wait for the terminal result.

        Never raises for generation failures; they come back as a FAIL result
        with an error code.
        """
        try:
            model, policy = self.catalog.resolve(model_id)
            self._check_input(model, request)
            session = await self._authenticate()
        except VideoGenerationError as e:
            logger.error(f"Generation refused for {model_id}: {e}")
            result = GenerationResult.failure(str(e), e.error_code)
            await self._emit(on_progress, result.to_update())
            return result
        except Exception as e:
            logger.exception(f"Generation for {model_id} could not start")
            result = GenerationResult.failure(
                f"{type(e).__name__}: {e}", ErrorCode.UNEXPECTED_ERROR
            )
            await self._emit(on_progress, result.to_update())
            return result

        return await self._run_task(model, policy, request, session, on_progress)

    async def generate_stream(
        self,
        model_id: str,
        request: GenerationRequest,
        count: Optional[int] = None,
        on_progress: Optional[StreamProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> StreamSummary:
        """
        Generate `count` videos one after another.

        `on_progress(update, index, total)` sees every status of every task.
        `on_complete(summary)` runs once after the last task, whatever the
        outcomes. `on_error(exc)` runs instead when the stream itself cannot
        go on (unknown model, unsupported input, session lost or an error
        outside any task); on_complete is then skipped.
        """
        total = count if count is not None else (request.count or self.default_count)
        results: list[GenerationResult] = []

        try:
            model, policy = self.catalog.resolve(model_id)
            self._check_input(model, request)

            for index in range(total):
                session = await self._authenticate()

                async def forward(update: StatusUpdate, index: int = index) -> None:
                    await self._emit(on_progress, update, index, total)

                result = await self._run_task(model, policy, request, session, forward)
                results.append(result)

        except Exception as e:
            logger.error(f"Generation stream for {model_id} stopped after {len(results)}/{total}: {e}")
            await self._emit(on_error, e)
            return StreamSummary(results)

        summary = StreamSummary(results)
        logger.info(f"Generation stream for {model_id} done: {summary.message}")
        await self._emit(on_complete, summary)
        return summary

    async def resume(
        self,
        task: GenerationTask,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[GenerationResult]:
        """
        Continue polling a task that was created earlier.

        Skips admission and creation. Terminal tasks are returned as they are.

        Returns:
            The terminal result, or None if this task already has a poller
        """
        if task.status.is_terminal:
            return GenerationResult.from_task(task)

        if task.task_id in self._pollers:
            logger.info(f"Task {task.task_id} already being polled, not resuming")
            return None

        policy = self.catalog.get_policy(task.group)
        if policy is None:
            logger.error(f"Cannot resume {task.task_id}: no policy for group {task.group.value}")
            return GenerationResult.failure(
                f"No group policy for {task.group.value}",
                ErrorCode.MODEL_UNAVAILABLE,
                task_id=task.task_id,
                progress=task.progress,
            )

        logger.info(f"Resuming task {task.task_id} at {task.progress}%")
        self._pollers.add(task.task_id)
        try:
            return await self._poll_and_finish(task, policy, on_progress)
        except Exception as e:
            logger.exception(f"Unexpected error resuming task {task.task_id}")
            return await self._fail_unexpected(task, e, on_progress)
        finally:
            self._pollers.discard(task.task_id)

    def active_requests(self, group: ModelGroup) -> int:
        return self.admission.active_requests(group)

    def last_request_time(self, group: ModelGroup) -> float:
        return self.admission.last_request_time(group)

    def is_polling(self, task_id: str) -> bool:
        return task_id in self._pollers

    # --------------------------------------------------------------------------------
    # Phases
    # --------------------------------------------------------------------------------

    async def _authenticate(self) -> Session:
        session = await self.sessions.get_current_session()
        if session is None:
            raise AuthRequiredError()
        return session

    @staticmethod
    def _check_input(model: VideoModel, request: GenerationRequest) -> None:
        reason = model.unsupported_input(
            image_count=len(request.image_urls),
            resolution=request.output_config.resolution,
            has_last_frame=bool(request.last_frame_url),
        )
        if reason:
            raise UnsupportedInputError(reason)

    async def _run_task(
        self,
        model: VideoModel,
        policy: GroupPolicy,
        request: GenerationRequest,
        session: Session,
        on_progress: Optional[ProgressCallback],
    ) -> GenerationResult:
        """One task from admission to terminal result. The slot is held throughout."""
        task: Optional[GenerationTask] = None
        claimed: Optional[str] = None

        async with self.admission.admitted(model.group, policy):
            try:
                await self._emit(on_progress, StatusUpdate(
                    status=TaskStatus.PROCESSING,
                    progress=0,
                    phase=TaskPhase.ADMITTED,
                ))

                created = await self.client.create_task(model, request)
                if not created.success:
                    logger.error(
                        f"Task creation failed for {model.id}: "
                        f"{created.error} ({created.error_code})"
                    )
                    result = GenerationResult.failure(
                        created.error or "Task creation failed",
                        created.error_code,
                    )
                    await self._emit(on_progress, result.to_update())
                    return result

                # Claim the task id before the first await so a recovery sweep
                # cannot attach a second poller
                claimed = created.task_id
                self._pollers.add(claimed)

                task = GenerationTask(
                    task_id=created.task_id,
                    group=model.group,
                    model_id=model.id,
                    request_id=created.request_id,
                    model_name=model.model_name,
                    model_version=model.model_version,
                    prompt=request.prompt,
                    user_id=session.user_id,
                    chat_id=request.chat_id,
                    message_id=request.message_id,
                )
                await best_effort("ledger.create", self.ledger.create(task))
                await self._emit(on_progress, StatusUpdate(
                    status=TaskStatus.PROCESSING,
                    progress=0,
                    phase=TaskPhase.CREATED,
                    task_id=task.task_id,
                ))

                return await self._poll_and_finish(task, policy, on_progress)

            except Exception as e:
                logger.exception(f"Unexpected error generating with {model.id}")
                return await self._fail_unexpected(task, e, on_progress)
            finally:
                if claimed is not None:
                    self._pollers.discard(claimed)

    async def _poll_and_finish(
        self,
        task: GenerationTask,
        policy: GroupPolicy,
        on_progress: Optional[ProgressCallback],
    ) -> GenerationResult:
        """Poll to a terminal status and record it. The caller holds the poller claim."""

        async def on_status(status: ProviderStatus) -> None:
            if status.status != TaskStatus.PROCESSING.value:
                return
            progress = task.advance(status.progress, poll_count=task.poll_count + 1)
            await best_effort(
                "ledger.update_progress",
                self.ledger.update_progress(task.task_id, progress, task.poll_count),
            )
            await self._emit(on_progress, StatusUpdate(
                status=TaskStatus.PROCESSING,
                progress=progress,
                phase=TaskPhase.POLLING,
                task_id=task.task_id,
            ))

        completion = await self.client.wait_for_completion(task.task_id, policy, on_status)
        task.poll_count = max(task.poll_count, completion.poll_count)

        if not completion.success:
            task.advance(completion.progress)
            return await self._fail(
                task,
                completion.error or "Video generation failed",
                completion.error_code,
                on_progress,
            )

        await self._emit(on_progress, StatusUpdate(
            status=TaskStatus.PROCESSING,
            progress=task.progress,
            phase=TaskPhase.RELOCATING,
            task_id=task.task_id,
        ))
        media_url = await self._relocate(completion.media_url, MediaKind.VIDEO, task.task_id)
        cover_url = None
        if completion.cover_url:
            cover_url = await self._relocate(completion.cover_url, MediaKind.IMAGE, task.task_id)

        task.finish(
            media_url=media_url,
            cover_url=cover_url,
            temporary_media_url=completion.media_url,
            temporary_cover_url=completion.cover_url,
            duration=completion.duration,
            resolution=completion.resolution,
        )
        task.total_time_ms = self._elapsed_ms(task)
        await best_effort("ledger.mark_complete", self.ledger.mark_complete(task.task_id, task))

        logger.info(
            f"Task {task.task_id} finished after {task.poll_count} polls "
            f"({'relocated' if task.is_relocated else 'temporary URL'})"
        )
        result = GenerationResult.from_task(task)
        await self._emit(on_progress, result.to_update())
        return result

    async def _relocate(self, url: str, kind: MediaKind, task_id: str) -> str:
        """Permanent URL for `url`, or `url` itself if relocation fails."""
        try:
            relocation = await self.relocator.relocate(url, kind)
        except Exception as e:
            logger.warning(f"Relocation of {kind.value} for {task_id} raised {type(e).__name__}: {e}")
            return url

        if relocation.success and relocation.permanent_url:
            return relocation.permanent_url

        logger.warning(
            f"Relocation of {kind.value} for {task_id} failed "
            f"({relocation.error_code}): {relocation.error}; keeping provider URL"
        )
        return url

    async def _fail(
        self,
        task: GenerationTask,
        error: str,
        error_code: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> GenerationResult:
        task.fail(error, error_code)
        task.total_time_ms = self._elapsed_ms(task)
        await best_effort("ledger.mark_failed", self.ledger.mark_failed(task.task_id, task))

        logger.error(f"Task {task.task_id} failed: {error} ({error_code})")
        result = GenerationResult.from_task(task)
        await self._emit(on_progress, result.to_update())
        return result

    async def _fail_unexpected(
        self,
        task: Optional[GenerationTask],
        error: Exception,
        on_progress: Optional[ProgressCallback],
    ) -> GenerationResult:
        message = f"{type(error).__name__}: {error}"
        if task is not None and not task.status.is_terminal:
            return await self._fail(task, message, ErrorCode.UNEXPECTED_ERROR, on_progress)

        result = GenerationResult.failure(
            message,
            ErrorCode.UNEXPECTED_ERROR,
            task_id=task.task_id if task else None,
            progress=task.progress if task else 0,
        )
        await self._emit(on_progress, result.to_update())
        return result

    # --------------------------------------------------------------------------------
    # Helpers
    # --------------------------------------------------------------------------------

    @staticmethod
    def _elapsed_ms(task: GenerationTask) -> int:
        return int((utcnow() - task.created_at).total_seconds() * 1000)

    @staticmethod
    async def _emit(callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Call a progress callback, dropping any error it raises."""
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback error: {type(e).__name__}: {e}")
