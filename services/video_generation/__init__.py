"""
Video Generation Service

Runs AIGC video generations against Tencent Cloud VOD:
- client: signed VOD API calls and polling
- orchestrator: admission, creation, polling, relocation
- task_ledger: durable task rows for recovery
- recovery: resumes tasks left PROCESSING
"""

from .client import CompletionResult, CreateTaskResult, ProviderStatus, VodAigcClient
from .orchestrator import GenerationOrchestrator
from .recovery import RecoverySweep
from .relocator import MediaRelocator, RelocationResult
from .state import (
    GenerationRequest,
    GenerationResult,
    GenerationTask,
    MediaKind,
    OutputConfig,
    StatusUpdate,
    StreamSummary,
    TaskPhase,
    TaskScope,
    TaskStatus,
)
from .task_ledger import TaskLedger

__all__ = [
    "VodAigcClient",
    "CreateTaskResult",
    "CompletionResult",
    "ProviderStatus",
    "GenerationOrchestrator",
    "RecoverySweep",
    "MediaRelocator",
    "RelocationResult",
    "GenerationRequest",
    "GenerationResult",
    "GenerationTask",
    "MediaKind",
    "OutputConfig",
    "StatusUpdate",
    "StreamSummary",
    "TaskPhase",
    "TaskScope",
    "TaskStatus",
    "TaskLedger",
]
