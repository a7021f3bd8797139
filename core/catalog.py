"""
Video model catalog and per-group scheduling policies.

The catalog is a JSON document with two sections:
- configs: one GroupPolicy per provider group
- models:  the models exposed to callers, each belonging to one group

Loaded once at startup; everything returned from here is immutable.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from core.errors import ModelUnavailableError

logger = logging.getLogger(__name__)


class ModelGroup(str, Enum):
    """Provider groups. Models in one group share a GroupPolicy."""
    HAILUO = "Hailuo"
    KLING = "Kling"
    VIDU = "Vidu"
    JIMENG = "Jimeng"
    SEEDANCE = "Seedance"
    GV = "GV"
    OS = "OS"


@dataclass(frozen=True)
class GroupPolicy:
    """Concurrency, cooldown and polling limits for one provider group."""
    max_concurrent: int
    cooldown_ms: int
    poll_interval_ms: int
    poll_timeout_ms: int
    max_poll_attempts: int

    @classmethod
    def from_dict(cls, data: dict) -> "GroupPolicy":
        policy = cls(
            max_concurrent=int(data["maxConcurrent"]),
            cooldown_ms=int(data["cooldownMs"]),
            poll_interval_ms=int(data["pollIntervalMs"]),
            poll_timeout_ms=int(data["pollTimeoutMs"]),
            max_poll_attempts=int(data["maxPollAttempts"]),
        )
        if policy.max_concurrent < 1:
            raise ValueError(f"maxConcurrent must be >= 1, got {policy.max_concurrent}")
        if min(policy.cooldown_ms, policy.poll_interval_ms, policy.poll_timeout_ms) < 0:
            raise ValueError("Timing values must not be negative")
        if policy.max_poll_attempts < 1:
            raise ValueError(f"maxPollAttempts must be >= 1, got {policy.max_poll_attempts}")
        return policy


@dataclass(frozen=True)
class VideoModel:
    """A video generation model as exposed by the provider."""
    id: str                  # "{model_name}-{model_version}"
    name: str
    model_name: str          # provider ModelName
    model_version: str       # provider ModelVersion
    group: ModelGroup
    support_t2v: bool = True
    support_i2v: bool = False
    max_images: int = 1
    support_last_frame: bool = False
    supported_resolutions: tuple[str, ...] = ("720P", "1080P")
    last_frame_resolutions: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "VideoModel":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            model_name=data["modelName"],
            model_version=data["modelVersion"],
            group=ModelGroup(data["group"]),
            support_t2v=bool(data.get("supportT2V", True)),
            support_i2v=bool(data.get("supportI2V", False)),
            max_images=int(data.get("maxImages", 1)),
            support_last_frame=bool(data.get("supportLastFrame", False)),
            supported_resolutions=tuple(data.get("supportedResolutions", ("720P", "1080P"))),
            last_frame_resolutions=tuple(data.get("lastFrameResolutions", ())),
        )

    def accepts_images(self, image_count: int) -> bool:
        """Whether this model can take `image_count` reference images."""
        if image_count == 0:
            return self.support_t2v
        return self.support_i2v and image_count <= self.max_images

    def can_use_last_frame(self, resolution: str, image_count: int) -> bool:
        if not self.support_last_frame:
            return False
        # Kling only pairs first and last frame at some resolutions
        if self.last_frame_resolutions and resolution not in self.last_frame_resolutions:
            return False
        # GV cannot combine several first frames with a last frame
        if self.model_name == "GV" and image_count > 1:
            return False
        return True

    def unsupported_input(
        self,
        image_count: int,
        resolution: str,
        has_last_frame: bool = False,
    ) -> Optional[str]:
        """
        Check a request's inputs against this model's capabilities.

        Returns:
            A reason the model cannot serve the request, or None if it can
        """
        if not self.accepts_images(image_count):
            if image_count == 0:
                return f"{self.id} needs a reference image"
            if not self.support_i2v:
                return f"{self.id} does not take reference images"
            return f"{self.id} takes at most {self.max_images} image(s), got {image_count}"

        if self.supported_resolutions and resolution not in self.supported_resolutions:
            return (
                f"{self.id} does not support {resolution} "
                f"(supported: {', '.join(self.supported_resolutions)})"
            )

        if has_last_frame and not self.can_use_last_frame(resolution, image_count):
            return f"{self.id} cannot use a last frame at {resolution} with {image_count} image(s)"

        return None


class ModelCatalog:
    """
    Read-only lookup over models and group policies.

    Usage:
        catalog = ModelCatalog.load("core/models.json")
        model = catalog.get_model("Kling-2.1")
        policy = catalog.get_policy(model.group)
    """

    def __init__(
        self,
        models: list[VideoModel],
        policies: dict[ModelGroup, GroupPolicy],
    ):
        self._models = {model.id: model for model in models}
        self._policies = dict(policies)

    @classmethod
    def from_dict(cls, data: dict) -> "ModelCatalog":
        policies = {
            ModelGroup(group): GroupPolicy.from_dict(policy)
            for group, policy in data.get("configs", {}).items()
        }
        models = [VideoModel.from_dict(entry) for entry in data.get("models", [])]
        return cls(models, policies)

    @classmethod
    def load(cls, path: str) -> "ModelCatalog":
        """Load the catalog from a JSON file."""
        with open(Path(path), encoding="utf-8") as f:
            catalog = cls.from_dict(json.load(f))
        logger.info(
            f"Loaded {len(catalog._models)} models in {len(catalog._policies)} groups from {path}"
        )
        return catalog

    @property
    def groups(self) -> list[ModelGroup]:
        return list(self._policies)

    def all_models(self) -> list[VideoModel]:
        return list(self._models.values())

    def models_in_group(self, group: ModelGroup) -> list[VideoModel]:
        return [m for m in self._models.values() if m.group == group]

    def get_model(self, model_id: str) -> Optional[VideoModel]:
        return self._models.get(model_id)

    def get_policy(self, group: ModelGroup) -> Optional[GroupPolicy]:
        return self._policies.get(group)

    def resolve(self, model_id: str) -> tuple[VideoModel, GroupPolicy]:
        """
        Look up a model together with its group policy.

        Raises:
            ModelUnavailableError: unknown model, or its group has no policy
        """
        model = self.get_model(model_id)
        if model is None:
            raise ModelUnavailableError(f"Unknown model: {model_id}")

        policy = self.get_policy(model.group)
        if policy is None:
            raise ModelUnavailableError(
                f"No group policy for {model.group.value} (model {model_id})"
            )
        return model, policy
