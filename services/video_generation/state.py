"""
Generation task state.

Defines the records passed between the provider client, the orchestrator,
the task ledger and the caller's progress callbacks.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from core.catalog import ModelGroup
from core.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Provider-visible status of a generation task."""
    PROCESSING = "PROCESSING"
    FINISH = "FINISH"
    FAIL = "FAIL"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PROCESSING


class TaskPhase(str, Enum):
    """Orchestrator-side phases of one generation."""
    ADMITTED = "admitted"
    CREATED = "created"
    POLLING = "polling"
    RELOCATING = "relocating"
    COMPLETE = "complete"
    FAILED = "failed"


class MediaKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"


@dataclass
class OutputConfig:
    """Provider output options."""
    storage_mode: str = "Temporary"     # Temporary | Permanent
    resolution: str = "1080P"           # 720P | 1080P | 2K | 4K
    aspect_ratio: Optional[str] = None  # 16:9 | 9:16 | 1:1
    enhance_switch: str = "Disabled"


@dataclass
class GenerationRequest:
    """Request for video generation."""
    prompt: str
    count: int = 1
    enhance_prompt: str = "Enabled"
    image_urls: list[str] = field(default_factory=list)
    output_config: OutputConfig = field(default_factory=OutputConfig)
    last_frame_url: Optional[str] = None
    scene_type: Optional[str] = None  # Kling only

    # Where the result is shown
    chat_id: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class TaskScope:
    """Selects the ledger rows a recovery sweep looks at."""
    user_id: str
    chat_id: Optional[str] = None


@dataclass
class GenerationTask:
    """
    One provider task and its lifecycle.

    `task_id` cannot be reassigned. Status only moves PROCESSING -> FINISH or
    PROCESSING -> FAIL; progress never decreases while PROCESSING.
    """
    task_id: str
    group: ModelGroup
    model_id: str
    status: TaskStatus = TaskStatus.PROCESSING
    progress: int = 0

    # Result (FINISH only). media_url is the relocated URL, or the temporary one.
    media_url: Optional[str] = None
    cover_url: Optional[str] = None
    temporary_media_url: Optional[str] = None
    temporary_cover_url: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None

    # Error (FAIL only)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # Request context
    request_id: Optional[str] = None
    model_name: Optional[str] = None
    model_version: Optional[str] = None
    prompt: Optional[str] = None
    user_id: Optional[str] = None
    chat_id: Optional[str] = None
    message_id: Optional[str] = None

    # Timing / diagnostics
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    poll_count: int = 0
    total_time_ms: Optional[int] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "task_id" and "task_id" in self.__dict__:
            raise AttributeError("task_id is immutable once assigned")
        super().__setattr__(name, value)

    def advance(self, progress: Optional[int], poll_count: Optional[int] = None) -> int:
        """Record an observed progress value; returns the effective progress."""
        if self.status.is_terminal:
            return self.progress
        if progress is not None:
            self.progress = max(self.progress, min(max(int(progress), 0), 100))
        if poll_count is not None:
            self.poll_count = poll_count
        return self.progress

    def finish(
        self,
        media_url: str,
        cover_url: Optional[str] = None,
        temporary_media_url: Optional[str] = None,
        temporary_cover_url: Optional[str] = None,
        duration: Optional[float] = None,
        resolution: Optional[str] = None,
    ) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(f"Task {self.task_id} already {self.status.value}")
        if not media_url:
            raise InvalidTransitionError(f"Task {self.task_id} cannot finish without a media URL")
        self.status = TaskStatus.FINISH
        self.progress = 100
        self.media_url = media_url
        self.cover_url = cover_url
        self.temporary_media_url = temporary_media_url or media_url
        self.temporary_cover_url = temporary_cover_url or cover_url
        self.duration = duration
        self.resolution = resolution
        self.finished_at = utcnow()

    def fail(self, error_message: str, error_code: Optional[str] = None) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(f"Task {self.task_id} already {self.status.value}")
        self.status = TaskStatus.FAIL
        self.error_message = error_message or "Video generation failed"
        self.error_code = error_code
        self.finished_at = utcnow()

    @property
    def is_relocated(self) -> bool:
        return bool(self.media_url) and self.media_url != self.temporary_media_url


@dataclass
class StatusUpdate:
    """What progress callbacks receive."""
    status: TaskStatus
    progress: int
    phase: TaskPhase
    task_id: Optional[str] = None
    media_url: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.status is not TaskStatus.FAIL

    def to_cli_line(self) -> str:
        """Format as a single progress line."""
        bar_width = 20
        filled = int(self.progress / 100 * bar_width)
        bar = "█" * filled + "░" * (bar_width - filled)
        task = self.task_id or "-"

        if self.status is TaskStatus.FINISH:
            return f"✅ {task} [{bar}] 100% | {self.media_url}"
        if self.status is TaskStatus.FAIL:
            code = f" ({self.error_code})" if self.error_code else ""
            return f"❌ {task} [{bar}] {self.progress}% | {self.error}{code}"
        return f"⏳ {task} [{bar}] {self.progress}% | {self.phase.value}"


@dataclass
class GenerationResult:
    """Terminal outcome of one generation."""
    success: bool
    status: TaskStatus
    progress: int = 0
    task_id: Optional[str] = None
    media_url: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None
    relocated: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def from_task(cls, task: GenerationTask) -> "GenerationResult":
        return cls(
            success=task.status is TaskStatus.FINISH,
            status=task.status,
            progress=task.progress,
            task_id=task.task_id,
            media_url=task.media_url,
            cover_url=task.cover_url,
            duration=task.duration,
            relocated=task.is_relocated,
            error=task.error_message,
            error_code=task.error_code,
        )

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: Optional[str] = None,
        task_id: Optional[str] = None,
        progress: int = 0,
    ) -> "GenerationResult":
        return cls(
            success=False,
            status=TaskStatus.FAIL,
            progress=progress,
            task_id=task_id,
            error=error,
            error_code=error_code,
        )

    def to_update(self) -> StatusUpdate:
        return StatusUpdate(
            status=self.status,
            progress=self.progress,
            phase=TaskPhase.COMPLETE if self.success else TaskPhase.FAILED,
            task_id=self.task_id,
            media_url=self.media_url,
            cover_url=self.cover_url,
            duration=self.duration,
            error=self.error,
            error_code=self.error_code,
        )


@dataclass
class StreamSummary:
    """Handed to `on_complete` once a generation stream has finished."""
    results: list[GenerationResult]

    @property
    def success(self) -> bool:
        return any(r.success for r in self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def message(self) -> str:
        if self.results and self.failed == 0:
            return f"All {len(self.results)} videos generated"
        return f"Partial failure: {self.succeeded}/{len(self.results)} videos generated"

    @property
    def first(self) -> Optional[GenerationResult]:
        return self.results[0] if self.results else None
