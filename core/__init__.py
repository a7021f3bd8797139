"""
Core Components

Foundational infrastructure for the video generation orchestrator:
- Configuration and the model catalog
- Per-group admission control
- Error types and best-effort side effects
"""

from .admission import GroupAdmission
from .best_effort import best_effort
from .catalog import GroupPolicy, ModelCatalog, ModelGroup, VideoModel
from .config import Config, get_config

__all__ = [
    "Config",
    "get_config",
    "GroupAdmission",
    "GroupPolicy",
    "ModelCatalog",
    "ModelGroup",
    "VideoModel",
    "best_effort",
]
