"""
Tests for the Generation Orchestrator.

Provider, ledger and relocator are in-memory fakes (see conftest.py); the
polling loop and admission control are the real ones.
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock

import httpx
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import (
    FAST_POLICY,
    FakeLedger,
    FakeProviderClient,
    FakeRelocator,
    FakeSessions,
    failed,
    finished,
    make_catalog,
    processing,
)
from core.catalog import GroupPolicy, ModelGroup
from core.errors import ErrorCode
from services.video_generation.client import CreateTaskResult
from services.video_generation.orchestrator import GenerationOrchestrator
from services.video_generation.recovery import RecoverySweep
from services.video_generation.state import (
    GenerationRequest,
    GenerationTask,
    MediaKind,
    OutputConfig,
    TaskPhase,
    TaskScope,
    TaskStatus,
)

REQUEST = GenerationRequest(prompt="A cat surfing at sunset", chat_id="chat-1")


def make_orchestrator(
    client,
    sessions,
    ledger=None,
    relocator=None,
    catalog=None,
    admission=None,
) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        client=client,
        ledger=ledger if ledger is not None else FakeLedger(),
        relocator=relocator if relocator is not None else FakeRelocator(),
        sessions=sessions,
        catalog=catalog or make_catalog(),
        admission=admission,
    )


class TestGenerate:
    """Test single generations end to end."""

    @pytest.mark.asyncio
    async def test_happy_path(self, sessions, ledger, relocator, admission):
        client = FakeProviderClient([processing(10), processing(55), finished()])
        orchestrator = make_orchestrator(client, sessions, ledger, relocator, admission=admission)
        updates = []

        result = await orchestrator.generate("Kling-2.1", REQUEST, on_progress=updates.append)

        assert result.success
        assert result.status is TaskStatus.FINISH
        assert result.task_id == "abc"
        assert result.progress == 100
        assert result.media_url == "https://storage.example.com/abc.mp4"
        assert result.relocated

        phases = [u.phase for u in updates]
        assert phases == [
            TaskPhase.ADMITTED,
            TaskPhase.CREATED,
            TaskPhase.POLLING,
            TaskPhase.POLLING,
            TaskPhase.RELOCATING,
            TaskPhase.COMPLETE,
        ]
        assert [u.progress for u in updates if u.phase is TaskPhase.POLLING] == [10, 55]

        row = ledger.rows["abc"]
        assert row.status is TaskStatus.FINISH
        assert row.user_id == "user-1"
        assert row.chat_id == "chat-1"
        assert ledger.progress_writes == [("abc", 10), ("abc", 55)]
        assert relocator.calls == [("https://vod.example.com/tmp/abc.mp4", MediaKind.VIDEO)]
        assert orchestrator.active_requests(ModelGroup.KLING) == 0
        assert not orchestrator.is_polling("abc")

    @pytest.mark.asyncio
    async def test_cover_is_relocated_separately(self, sessions, ledger, admission):
        relocator = FakeRelocator()
        client = FakeProviderClient([finished(cover_url="https://vod.example.com/tmp/abc.jpg")])
        orchestrator = make_orchestrator(client, sessions, ledger, relocator, admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.cover_url == "https://storage.example.com/abc.jpg"
        assert [kind for _, kind in relocator.calls] == [MediaKind.VIDEO, MediaKind.IMAGE]

    @pytest.mark.asyncio
    async def test_creation_failure_skips_polling_and_ledger(self, sessions, ledger, admission):
        client = FakeProviderClient(create_result=CreateTaskResult(
            success=False, error="Quota exceeded", error_code="QUOTA"
        ))
        orchestrator = make_orchestrator(client, sessions, ledger, admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert not result.success
        assert result.status is TaskStatus.FAIL
        assert result.error_code == "QUOTA"
        assert client.status_calls == 0
        assert ledger.rows == {}

    @pytest.mark.asyncio
    async def test_polling_timeout(self, sessions, ledger, admission):
        slow = GroupPolicy(
            max_concurrent=1,
            cooldown_ms=0,
            poll_interval_ms=5,
            poll_timeout_ms=20,
            max_poll_attempts=1000,
        )
        client = FakeProviderClient([processing(5)])
        orchestrator = make_orchestrator(
            client, sessions, ledger, catalog=make_catalog(slow), admission=admission
        )

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.status is TaskStatus.FAIL
        assert result.error_code == ErrorCode.TIMEOUT
        assert result.progress == 5
        assert ledger.rows["abc"].status is TaskStatus.FAIL
        assert ledger.rows["abc"].error_code == ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_relocation_error_keeps_temporary_url(self, sessions, ledger, admission):
        relocator = FakeRelocator(raise_error=httpx.ConnectError("network down"))
        client = FakeProviderClient([processing(50), finished()])
        orchestrator = make_orchestrator(client, sessions, ledger, relocator, admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.status is TaskStatus.FINISH
        assert result.media_url == "https://vod.example.com/tmp/abc.mp4"
        assert not result.relocated
        assert ledger.rows["abc"].status is TaskStatus.FINISH

    @pytest.mark.asyncio
    async def test_relocation_failure_result_keeps_temporary_url(self, sessions, admission):
        relocator = FakeRelocator(fail_with=ErrorCode.SIZE_LIMIT_EXCEEDED)
        orchestrator = make_orchestrator(
            FakeProviderClient([finished()]), sessions, relocator=relocator, admission=admission
        )

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.success
        assert result.media_url == "https://vod.example.com/tmp/abc.mp4"

    @pytest.mark.asyncio
    async def test_provider_failure(self, sessions, ledger, admission):
        client = FakeProviderClient([processing(30), failed()])
        orchestrator = make_orchestrator(client, sessions, ledger, admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.status is TaskStatus.FAIL
        assert result.error_code == "CONTENT_REJECTED"
        assert result.error == "Content rejected"
        assert result.progress == 30
        assert result.media_url is None
        assert ledger.rows["abc"].status is TaskStatus.FAIL

    @pytest.mark.asyncio
    async def test_auth_required(self, admission):
        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, FakeSessions(None), admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.error_code == ErrorCode.AUTH_REQUIRED
        assert client.created == []

    @pytest.mark.asyncio
    async def test_unknown_model(self, sessions, admission):
        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, sessions, admission=admission)

        result = await orchestrator.generate("Sora-9", REQUEST)

        assert result.error_code == ErrorCode.MODEL_UNAVAILABLE
        assert client.created == []

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_slot(self, sessions, admission):
        client = FakeProviderClient([finished()])
        client.create_task = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator = make_orchestrator(client, sessions, admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.error_code == ErrorCode.UNEXPECTED_ERROR
        assert "boom" in result.error
        assert orchestrator.active_requests(ModelGroup.KLING) == 0

    @pytest.mark.asyncio
    async def test_ledger_failures_do_not_change_result(self, sessions, admission):
        ledger = AsyncMock()
        ledger.create.side_effect = ConnectionError("db down")
        ledger.update_progress.side_effect = ConnectionError("db down")
        ledger.mark_complete.side_effect = ConnectionError("db down")
        client = FakeProviderClient([processing(40), finished()])
        orchestrator = make_orchestrator(client, sessions, ledger, admission=admission)

        result = await orchestrator.generate("Kling-2.1", REQUEST)

        assert result.success
        assert result.media_url == "https://storage.example.com/abc.mp4"

    @pytest.mark.asyncio
    async def test_callback_errors_are_dropped(self, sessions, admission):
        def on_progress(update):
            raise RuntimeError("consumer gone")

        orchestrator = make_orchestrator(
            FakeProviderClient([processing(10), finished()]), sessions, admission=admission
        )

        result = await orchestrator.generate("Kling-2.1", REQUEST, on_progress=on_progress)
        assert result.success

    @pytest.mark.asyncio
    async def test_async_callbacks(self, sessions, admission):
        seen = []

        async def on_progress(update):
            await asyncio.sleep(0)
            seen.append(update.phase)

        orchestrator = make_orchestrator(FakeProviderClient([finished()]), sessions, admission=admission)
        await orchestrator.generate("Kling-2.1", REQUEST, on_progress=on_progress)

        assert seen[-1] is TaskPhase.COMPLETE

    @pytest.mark.asyncio
    async def test_concurrency_bounded_across_callers(self, sessions, admission):
        single = GroupPolicy(
            max_concurrent=1,
            cooldown_ms=0,
            poll_interval_ms=1,
            poll_timeout_ms=5000,
            max_poll_attempts=20,
        )
        client = FakeProviderClient([processing(10), processing(20), finished()])
        orchestrator = make_orchestrator(
            client, sessions, catalog=make_catalog(single), admission=admission
        )
        peak = 0

        def on_progress(update):
            nonlocal peak
            peak = max(peak, orchestrator.active_requests(ModelGroup.KLING))

        results = await asyncio.gather(*(
            orchestrator.generate("Kling-2.1", REQUEST, on_progress=on_progress) for _ in range(3)
        ))

        assert all(r.success for r in results)
        assert len({r.task_id for r in results}) == 3
        assert peak == 1
        assert orchestrator.last_request_time(ModelGroup.KLING) > 0

    @pytest.mark.asyncio
    async def test_sweep_during_ledger_insert_leaves_task_alone(self, sessions, admission):
        class SlowLedger(FakeLedger):
            def __init__(self):
                super().__init__()
                self.inserted = asyncio.Event()

            async def create(self, task):
                created = await super().create(task)
                self.inserted.set()
                await asyncio.sleep(0.05)
                return created

        ledger = SlowLedger()
        client = FakeProviderClient([processing(50), finished()])
        orchestrator = make_orchestrator(client, sessions, ledger, admission=admission)
        sweep = RecoverySweep(orchestrator, ledger)

        generation = asyncio.create_task(orchestrator.generate("Kling-2.1", REQUEST))
        await ledger.inserted.wait()

        assert orchestrator.is_polling("abc")
        recovered = await sweep.run(TaskScope(user_id="user-1"))
        result = await generation

        assert recovered == []
        assert result.success
        assert ledger.rows["abc"].status is TaskStatus.FINISH
        assert client.status_calls == 2
        assert not orchestrator.is_polling("abc")

    @pytest.mark.asyncio
    async def test_session_provider_error_becomes_failure(self, admission):
        class BrokenSessions(FakeSessions):
            async def get_current_session(self):
                raise ValueError("Expecting value: line 1 column 1 (char 0)")

        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, BrokenSessions(), admission=admission)
        updates = []

        result = await orchestrator.generate("Kling-2.1", REQUEST, on_progress=updates.append)

        assert not result.success
        assert result.error_code == ErrorCode.UNEXPECTED_ERROR
        assert "ValueError" in result.error
        assert updates[-1].status is TaskStatus.FAIL
        assert client.created == []

    @pytest.mark.asyncio
    async def test_unsupported_input_is_refused(self, sessions, admission):
        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        request = GenerationRequest(
            prompt="Waves",
            image_urls=["https://img.example.com/first.png"],
        )

        result = await orchestrator.generate("Hailuo-2.3", request)

        assert result.error_code == ErrorCode.UNSUPPORTED_INPUT
        assert client.created == []

    @pytest.mark.asyncio
    async def test_last_frame_needs_model_support(self, sessions, admission):
        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        request = GenerationRequest(prompt="Waves", last_frame_url="https://img.example.com/last.png")

        refused = await orchestrator.generate("Hailuo-2.3", request)
        accepted = await orchestrator.generate("Kling-2.1", request)

        assert refused.error_code == ErrorCode.UNSUPPORTED_INPUT
        assert accepted.success
        assert len(client.created) == 1


class TestGenerateStream:
    """Test sequential multi-video generation."""

    @pytest.mark.asyncio
    async def test_three_videos(self, sessions, admission):
        orchestrator = make_orchestrator(
            FakeProviderClient([processing(50), finished()]), sessions, admission=admission
        )
        progress = []
        completions = []

        summary = await orchestrator.generate_stream(
            "Kling-2.1",
            REQUEST,
            count=3,
            on_progress=lambda update, index, total: progress.append((index, total, update.phase)),
            on_complete=completions.append,
        )

        indexes = [index for index, _, _ in progress]
        assert indexes == sorted(indexes)
        assert set(indexes) == {0, 1, 2}
        assert all(total == 3 for _, total, _ in progress)
        assert completions == [summary]
        assert summary.success
        assert summary.message == "All 3 videos generated"
        assert [r.task_id for r in summary.results] == ["abc", "abc-1", "abc-2"]

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, sessions, admission):
        client = FakeProviderClient([finished()])
        original_create = client.create_task
        calls = []

        async def flaky_create(model, request):
            calls.append(model)
            if len(calls) == 2:
                return CreateTaskResult(success=False, error="Quota exceeded", error_code="QUOTA")
            return await original_create(model, request)

        client.create_task = flaky_create
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        completions = []
        errors = []

        summary = await orchestrator.generate_stream(
            "Kling-2.1",
            REQUEST,
            count=3,
            on_complete=completions.append,
            on_error=errors.append,
        )

        assert len(completions) == 1
        assert errors == []
        assert [r.success for r in summary.results] == [True, False, True]
        assert summary.message == "Partial failure: 2/3 videos generated"

    @pytest.mark.asyncio
    async def test_session_lost_mid_stream(self, session, admission):
        class ExpiringSessions(FakeSessions):
            async def get_current_session(self):
                self.calls += 1
                return session if self.calls == 1 else None

        orchestrator = make_orchestrator(
            FakeProviderClient([finished()]), ExpiringSessions(), admission=admission
        )
        completions = []
        errors = []

        summary = await orchestrator.generate_stream(
            "Kling-2.1",
            REQUEST,
            count=3,
            on_complete=completions.append,
            on_error=errors.append,
        )

        assert len(summary.results) == 1
        assert completions == []
        assert len(errors) == 1
        assert errors[0].error_code == ErrorCode.AUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_unknown_model_reports_error(self, sessions, admission):
        orchestrator = make_orchestrator(FakeProviderClient(), sessions, admission=admission)
        errors = []

        summary = await orchestrator.generate_stream("Sora-9", REQUEST, count=2, on_error=errors.append)

        assert summary.results == []
        assert errors[0].error_code == ErrorCode.MODEL_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_count_defaults_to_request(self, sessions, admission):
        orchestrator = make_orchestrator(FakeProviderClient([finished()]), sessions, admission=admission)
        request = GenerationRequest(prompt="Waves", count=2)

        summary = await orchestrator.generate_stream("Hailuo-2.3", request)

        assert len(summary.results) == 2

    @pytest.mark.asyncio
    async def test_explicit_zero_count(self, sessions, admission):
        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        completions = []

        summary = await orchestrator.generate_stream(
            "Hailuo-2.3",
            GenerationRequest(prompt="Waves", count=2),
            count=0,
            on_complete=completions.append,
        )

        assert summary.results == []
        assert client.created == []
        assert len(completions) == 1

    @pytest.mark.asyncio
    async def test_session_provider_error_reports_error(self, admission):
        class BrokenSessions(FakeSessions):
            async def get_current_session(self):
                raise ValueError("Expecting value: line 1 column 1 (char 0)")

        orchestrator = make_orchestrator(FakeProviderClient(), BrokenSessions(), admission=admission)
        completions = []
        errors = []

        summary = await orchestrator.generate_stream(
            "Kling-2.1",
            REQUEST,
            count=2,
            on_complete=completions.append,
            on_error=errors.append,
        )

        assert summary.results == []
        assert completions == []
        assert len(errors) == 1
        assert isinstance(errors[0], ValueError)

    @pytest.mark.asyncio
    async def test_unsupported_input_reports_error(self, sessions, admission):
        client = FakeProviderClient()
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        errors = []
        request = GenerationRequest(
            prompt="Waves",
            output_config=OutputConfig(resolution="4K"),
        )

        summary = await orchestrator.generate_stream("Kling-2.1", request, count=2, on_error=errors.append)

        assert summary.results == []
        assert errors[0].error_code == ErrorCode.UNSUPPORTED_INPUT
        assert client.created == []


class TestResume:
    """Test the polling path for existing tasks."""

    def make_task(self, **kwargs) -> GenerationTask:
        return GenerationTask(
            task_id="abc",
            group=ModelGroup.KLING,
            model_id="Kling-2.1",
            user_id="user-1",
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_resume_skips_creation_and_admission(self, sessions, ledger, admission):
        await ledger.create(self.make_task())
        client = FakeProviderClient([processing(70), finished()])
        orchestrator = make_orchestrator(client, sessions, ledger, admission=admission)

        result = await orchestrator.resume(self.make_task(progress=40))

        assert result.success
        assert client.created == []
        assert admission.get_status() == {}
        assert ledger.rows["abc"].status is TaskStatus.FINISH

    @pytest.mark.asyncio
    async def test_no_second_poller(self, sessions, admission):
        client = FakeProviderClient([processing(10), processing(20), finished()])
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        task = self.make_task()

        first = asyncio.create_task(orchestrator.resume(task))
        await asyncio.sleep(0)
        assert orchestrator.is_polling("abc")
        assert await orchestrator.resume(self.make_task()) is None

        result = await first
        assert result.success

    @pytest.mark.asyncio
    async def test_terminal_task_is_returned_as_is(self, sessions, admission):
        client = FakeProviderClient([finished()])
        orchestrator = make_orchestrator(client, sessions, admission=admission)
        task = self.make_task()
        task.fail("Polling timed out", ErrorCode.TIMEOUT)

        result = await orchestrator.resume(task)

        assert result.error_code == ErrorCode.TIMEOUT
        assert client.status_calls == 0
