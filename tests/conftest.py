"""
Shared fixtures and in-memory fakes for the generation pipeline tests.
"""

import os
import sys
from typing import Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.admission import GroupAdmission
from core.catalog import GroupPolicy, ModelCatalog, ModelGroup, VideoModel
from core.config import VodConfig
from services.auth import Session
from services.video_generation.client import CreateTaskResult, ProviderStatus, VodAigcClient
from services.video_generation.relocator import RelocationResult
from services.video_generation.state import GenerationTask, TaskScope, TaskStatus


FAST_POLICY = GroupPolicy(
    max_concurrent=2,
    cooldown_ms=0,
    poll_interval_ms=1,
    poll_timeout_ms=5000,
    max_poll_attempts=20,
)

KLING = VideoModel(
    id="Kling-2.1",
    name="Kling 2.1",
    model_name="Kling",
    model_version="2.1",
    group=ModelGroup.KLING,
    support_i2v=True,
    support_last_frame=True,
)

HAILUO = VideoModel(
    id="Hailuo-2.3",
    name="Hailuo 2.3",
    model_name="Hailuo",
    model_version="2.3",
    group=ModelGroup.HAILUO,
)


def processing(progress: int, task_id: str = "abc") -> ProviderStatus:
    return ProviderStatus(task_id=task_id, status="PROCESSING", progress=progress)


def finished(
    media_url: str = "https://vod.example.com/tmp/abc.mp4",
    cover_url: Optional[str] = None,
    task_id: str = "abc",
) -> ProviderStatus:
    return ProviderStatus(
        task_id=task_id,
        status="FINISH",
        progress=100,
        media_url=media_url,
        cover_url=cover_url,
        duration=5,
    )


def failed(error: str = "Content rejected", code: str = "CONTENT_REJECTED", task_id: str = "abc"):
    return ProviderStatus(task_id=task_id, status="FAIL", error=error, error_code=code)


class FakeSessions:
    """SessionProvider with a fixed answer."""

    def __init__(self, session: Optional[Session] = None):
        self.session = session
        self.calls = 0

    async def get_current_session(self) -> Optional[Session]:
        self.calls += 1
        return self.session

    async def is_session_valid(self) -> bool:
        return self.session is not None


class FakeProviderClient(VodAigcClient):
    """
    VodAigcClient with scripted create/status answers.

    `wait_for_completion` is the real polling loop; only the API calls are faked.
    Once the script runs out, the last status repeats.
    """

    def __init__(
        self,
        statuses: Optional[list[Union[ProviderStatus, Exception]]] = None,
        create_result: Optional[CreateTaskResult] = None,
    ):
        super().__init__(VodConfig(secret_id="id", secret_key="key", sub_app_id=1))
        self.statuses = list(statuses or [])
        self.create_result = create_result
        self.created = []
        self.status_calls = 0
        self._next_id = 0

    async def create_task(self, model, request) -> CreateTaskResult:
        self.created.append((model, request))
        if self.create_result is not None:
            return self.create_result
        task_id = "abc" if self._next_id == 0 else f"abc-{self._next_id}"
        self._next_id += 1
        return CreateTaskResult(success=True, task_id=task_id, request_id="req-1")

    async def get_task_status(self, task_id: str) -> ProviderStatus:
        self.status_calls += 1
        if not self.statuses:
            return processing(0, task_id)
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item.model_copy(update={"task_id": task_id})


class FakeRelocator:
    """Relocator that succeeds, fails or raises on demand."""

    def __init__(self, fail_with: Optional[str] = None, raise_error: Optional[Exception] = None):
        self.fail_with = fail_with
        self.raise_error = raise_error
        self.calls = []

    async def relocate(self, temporary_url, kind) -> RelocationResult:
        self.calls.append((temporary_url, kind))
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_with:
            return RelocationResult(success=False, error="relocation failed", error_code=self.fail_with)
        name = temporary_url.rsplit("/", 1)[-1]
        return RelocationResult(success=True, permanent_url=f"https://storage.example.com/{name}")

    async def close(self):
        pass


class FakeLedger:
    """In-memory TaskLedger with the same status guards as the SQL one."""

    def __init__(self):
        self.rows: dict[str, GenerationTask] = {}
        self.progress_writes: list[tuple[str, int]] = []
        self.stored_urls: dict[str, tuple] = {}

    async def create(self, task: GenerationTask) -> bool:
        if task.task_id in self.rows:
            return False
        self.rows[task.task_id] = GenerationTask(
            task_id=task.task_id,
            group=task.group,
            model_id=task.model_id,
            user_id=task.user_id,
            chat_id=task.chat_id,
            prompt=task.prompt,
        )
        return True

    async def update_progress(self, task_id, progress, poll_count=None) -> bool:
        row = self.rows.get(task_id)
        if row is None or row.status.is_terminal:
            return False
        self.progress_writes.append((task_id, progress))
        row.advance(progress, poll_count)
        return True

    async def mark_complete(self, task_id, task) -> bool:
        row = self.rows.get(task_id)
        if row is None or row.status.is_terminal:
            return False
        row.finish(
            media_url=task.media_url,
            cover_url=task.cover_url,
            temporary_media_url=task.temporary_media_url,
            temporary_cover_url=task.temporary_cover_url,
            duration=task.duration,
        )
        return True

    async def mark_failed(self, task_id, task) -> bool:
        row = self.rows.get(task_id)
        if row is None or row.status.is_terminal:
            return False
        row.fail(task.error_message, task.error_code)
        return True

    async def find_incomplete(self, scope: TaskScope) -> list[GenerationTask]:
        return [
            row for row in self.rows.values()
            if row.user_id == scope.user_id
            and (scope.chat_id is None or row.chat_id == scope.chat_id)
            and row.status is TaskStatus.PROCESSING
        ]

    async def find_unrelocated(self, scope: TaskScope) -> list[GenerationTask]:
        return [
            row for row in self.rows.values()
            if row.user_id == scope.user_id
            and row.status is TaskStatus.FINISH
            and not row.is_relocated
            and row.task_id not in self.stored_urls
        ]

    async def get(self, task_id) -> Optional[GenerationTask]:
        return self.rows.get(task_id)

    async def update_stored_urls(self, task_id, media_url=None, cover_url=None) -> bool:
        if task_id not in self.rows:
            return False
        self.stored_urls[task_id] = (media_url, cover_url)
        return True

    async def count_processing(self, user_id) -> int:
        return len(await self.find_incomplete(TaskScope(user_id=user_id)))


def make_catalog(policy: GroupPolicy = FAST_POLICY) -> ModelCatalog:
    return ModelCatalog(
        [KLING, HAILUO],
        {ModelGroup.KLING: policy, ModelGroup.HAILUO: policy},
    )


def make_db_pool(conn):
    """asyncpg pool mock whose acquire() yields `conn`."""
    pool = AsyncMock()
    pool.acquire = MagicMock(return_value=AsyncMock(
        __aenter__=AsyncMock(return_value=conn),
        __aexit__=AsyncMock(return_value=None)
    ))
    return pool


@pytest.fixture
def session():
    return Session(user_id="user-1", access_token="token", email="user@example.com")


@pytest.fixture
def sessions(session):
    return FakeSessions(session)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def relocator():
    return FakeRelocator()


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def admission():
    return GroupAdmission(poll_interval_ms=1)


@pytest.fixture
def mock_conn():
    conn = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=0)
    conn.execute = AsyncMock(return_value="UPDATE 1")
    return conn


@pytest.fixture
def mock_db_pool(mock_conn):
    """Create a mock database pool."""
    return make_db_pool(mock_conn)
