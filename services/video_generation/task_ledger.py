"""
Task Ledger - durable record of video generation tasks.

One row per provider task in `video_tasks`, keyed by the provider task id.
The ledger is what lets a reloaded client find tasks that were still
running and resume polling them.

Rows only move PROCESSING -> FINISH or PROCESSING -> FAIL: every status
write is guarded by `status = 'PROCESSING'`, and progress writes never lower
the stored value.
"""

import logging
from typing import Optional

import asyncpg

from core.catalog import ModelGroup

from .state import GenerationTask, TaskScope, TaskStatus

logger = logging.getLogger(__name__)


def _rows_affected(command_tag: str) -> int:
    """Parse asyncpg's command tag, e.g. 'UPDATE 1'."""
    try:
        return int(command_tag.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _duration_seconds(duration: Optional[float]) -> Optional[int]:
    return int(round(duration)) if duration is not None else None


def row_to_task(row) -> GenerationTask:
    """
    Build a GenerationTask from a `video_tasks` row.

    Raises:
        ValueError: the row's model_name is not a known provider group
    """
    data = dict(row)
    status = TaskStatus(data["status"])
    temporary_media_url = data.get("video_url")
    temporary_cover_url = data.get("cover_url")

    return GenerationTask(
        task_id=data["task_id"],
        group=ModelGroup(data["model_name"]),
        model_id=data.get("model_id") or f"{data['model_name']}-{data['model_version']}",
        status=status,
        progress=data.get("progress") or 0,
        media_url=data.get("supabase_video_url") or temporary_media_url,
        cover_url=data.get("supabase_cover_url") or temporary_cover_url,
        temporary_media_url=temporary_media_url,
        temporary_cover_url=temporary_cover_url,
        duration=data.get("duration"),
        resolution=data.get("resolution"),
        error_code=data.get("error_code"),
        error_message=data.get("error_message"),
        request_id=data.get("request_id"),
        model_name=data.get("model_name"),
        model_version=data.get("model_version"),
        prompt=data.get("prompt"),
        user_id=str(data["user_id"]) if data.get("user_id") else None,
        chat_id=str(data["chat_id"]) if data.get("chat_id") else None,
        message_id=data.get("message_id"),
        created_at=data["created_at"],
        finished_at=data.get("finish_time"),
        poll_count=data.get("poll_count") or 0,
        total_time_ms=data.get("total_time_ms"),
    )


class TaskLedger:
    """
    Persists generation tasks to PostgreSQL.

    Every method raises on store errors; callers decide whether a failed
    write matters.

    Usage:
        ledger = TaskLedger(db_pool)

        await ledger.create(task)
        await ledger.update_progress(task.task_id, 55, poll_count=3)
        await ledger.mark_complete(task.task_id, task)

        pending = await ledger.find_incomplete(TaskScope(user_id=user_id))
    """

    def __init__(self, db_pool: asyncpg.Pool, table: str = "video_tasks"):
        self.db_pool = db_pool
        self.table = table

    async def create(self, task: GenerationTask) -> bool:
        """
        Insert a PROCESSING row for a freshly created task.

        Returns:
            False if a row for this task id already existed
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                f"""
                INSERT INTO {self.table} (
                    task_id,
                    request_id,
                    user_id,
                    chat_id,
                    message_id,
                    model_id,
                    model_name,
                    model_version,
                    prompt,
                    status,
                    progress,
                    poll_count,
                    created_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13
                )
                ON CONFLICT (task_id) DO NOTHING
                """,
                task.task_id,
                task.request_id,
                task.user_id,
                task.chat_id,
                task.message_id,
                task.model_id,
                task.model_name or task.group.value,
                task.model_version or "",
                task.prompt or "",
                TaskStatus.PROCESSING.value,
                task.progress,
                task.poll_count,
                task.created_at,
            )

        created = _rows_affected(result) > 0
        if created:
            logger.info(f"Recorded task {task.task_id} ({task.model_id})")
        else:
            logger.warning(f"Task {task.task_id} already recorded")
        return created

    async def update_progress(
        self,
        task_id: str,
        progress: int,
        poll_count: Optional[int] = None,
    ) -> bool:
        """Record polling progress. Ignored for terminal rows."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {self.table} SET
                    progress = GREATEST(COALESCE(progress, 0), $2),
                    poll_count = COALESCE($3, poll_count)
                WHERE task_id = $1 AND status = 'PROCESSING'
                """,
                task_id,
                progress,
                poll_count,
            )
        return _rows_affected(result) > 0

    async def mark_complete(self, task_id: str, task: GenerationTask) -> bool:
        """
        Move a row to FINISH with the task's result URLs.

        The provider's temporary URLs go to video_url/cover_url; relocated
        URLs (if any) to supabase_video_url/supabase_cover_url.

        Returns:
            False if the row was missing or already terminal
        """
        stored_video = task.media_url if task.media_url != task.temporary_media_url else None
        stored_cover = task.cover_url if task.cover_url != task.temporary_cover_url else None

        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {self.table} SET
                    status = $2,
                    progress = 100,
                    video_url = $3,
                    cover_url = $4,
                    supabase_video_url = $5,
                    supabase_cover_url = $6,
                    duration = $7,
                    resolution = $8,
                    poll_count = $9,
                    total_time_ms = $10,
                    finish_time = $11,
                    error_code = NULL,
                    error_message = NULL
                WHERE task_id = $1 AND status = 'PROCESSING'
                """,
                task_id,
                TaskStatus.FINISH.value,
                task.temporary_media_url or task.media_url,
                task.temporary_cover_url or task.cover_url,
                stored_video,
                stored_cover,
                _duration_seconds(task.duration),
                task.resolution,
                task.poll_count,
                task.total_time_ms,
                task.finished_at,
            )

        updated = _rows_affected(result) > 0
        if updated:
            logger.info(f"Task {task_id} marked FINISH")
        else:
            logger.warning(f"Task {task_id} not marked FINISH: row missing or already terminal")
        return updated

    async def mark_failed(self, task_id: str, task: GenerationTask) -> bool:
        """
        Move a row to FAIL. Progress stays where it was.

        Returns:
            False if the row was missing or already terminal
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {self.table} SET
                    status = $2,
                    error_code = $3,
                    error_message = $4,
                    poll_count = $5,
                    total_time_ms = $6,
                    finish_time = $7
                WHERE task_id = $1 AND status = 'PROCESSING'
                """,
                task_id,
                TaskStatus.FAIL.value,
                task.error_code,
                task.error_message or "Video generation failed",
                task.poll_count,
                task.total_time_ms,
                task.finished_at,
            )

        updated = _rows_affected(result) > 0
        if updated:
            logger.info(f"Task {task_id} marked FAIL ({task.error_code})")
        else:
            logger.warning(f"Task {task_id} not marked FAIL: row missing or already terminal")
        return updated

    async def find_incomplete(self, scope: TaskScope) -> list[GenerationTask]:
        """
        Get PROCESSING tasks for a user, optionally restricted to one chat.

        Rows that cannot be mapped (unknown model group) are skipped.
        """
        async with self.db_pool.acquire() as conn:
            if scope.chat_id:
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM {self.table}
                    WHERE user_id = $1 AND chat_id = $2 AND status = 'PROCESSING'
                    ORDER BY created_at ASC
                    """,
                    scope.user_id,
                    scope.chat_id,
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM {self.table}
                    WHERE user_id = $1 AND status = 'PROCESSING'
                    ORDER BY created_at ASC
                    """,
                    scope.user_id,
                )

        tasks = []
        for row in rows:
            try:
                tasks.append(row_to_task(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable task row {dict(row).get('task_id')}: {e}")
        return tasks

    async def find_unrelocated(self, scope: TaskScope) -> list[GenerationTask]:
        """Get FINISH tasks whose media still points at the provider's temporary URL."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM {self.table}
                WHERE user_id = $1
                  AND ($2::text IS NULL OR chat_id::text = $2)
                  AND status = 'FINISH'
                  AND video_url IS NOT NULL
                  AND supabase_video_url IS NULL
                ORDER BY created_at ASC
                """,
                scope.user_id,
                scope.chat_id,
            )

        tasks = []
        for row in rows:
            try:
                tasks.append(row_to_task(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable task row {dict(row).get('task_id')}: {e}")
        return tasks

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        """Get a single task by provider task id."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT * FROM {self.table} WHERE task_id = $1
                """,
                task_id,
            )
        return row_to_task(row) if row else None

    async def update_stored_urls(
        self,
        task_id: str,
        media_url: Optional[str] = None,
        cover_url: Optional[str] = None,
    ) -> bool:
        """Record permanent URLs obtained after the task finished."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {self.table} SET
                    supabase_video_url = COALESCE($2, supabase_video_url),
                    supabase_cover_url = COALESCE($3, supabase_cover_url)
                WHERE task_id = $1
                """,
                task_id,
                media_url,
                cover_url,
            )
        return _rows_affected(result) > 0

    async def count_processing(self, user_id: str) -> int:
        """Number of PROCESSING tasks for a user."""
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(
                f"""
                SELECT COUNT(*) FROM {self.table}
                WHERE user_id = $1 AND status = 'PROCESSING'
                """,
                user_id,
            )
        return int(count or 0)
