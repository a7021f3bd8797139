"""
Tencent Cloud VOD AIGC client.

Stateless request/response wrapper around the VOD video generation API:
- CreateAigcVideoTask: submit a generation, returns a TaskId
- DescribeTaskDetail: read the task's status, progress and output URLs

Every request is signed with TC3-HMAC-SHA256. Status payloads are validated
into `ProviderStatus` at this boundary, so callers never see half-filled
provider dictionaries.

Docs:
- https://cloud.tencent.com/document/product/266/126239
- https://cloud.tencent.com/document/product/266/33431
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError, model_validator

from core.catalog import GroupPolicy, VideoModel
from core.config import VodConfig
from core.errors import ErrorCode, ProviderRequestError, ProviderResponseError

from .state import GenerationRequest

logger = logging.getLogger(__name__)

SERVICE = "vod"
ALGORITHM = "TC3-HMAC-SHA256"
SIGNED_HEADERS = "content-type;host"


# ============================================================
# Models
# ============================================================

class ProviderStatus(BaseModel):
    """One observation of a provider task. FINISH carries a media URL, FAIL an error."""
    task_id: str
    status: Literal["PROCESSING", "FINISH", "FAIL"]
    progress: int = Field(default=0, ge=0, le=100)
    media_url: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @model_validator(mode="after")
    def _check_variant(self) -> "ProviderStatus":
        if self.status == "FINISH" and not self.media_url:
            raise ValueError("FINISH status requires a media_url")
        if self.status == "FAIL" and not self.error:
            raise ValueError("FAIL status requires an error message")
        if self.status != "FINISH" and (self.media_url or self.cover_url):
            raise ValueError("media URLs are only allowed on FINISH")
        return self


@dataclass
class CreateTaskResult:
    """Result of a CreateAigcVideoTask call."""
    success: bool
    task_id: Optional[str] = None
    request_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class CompletionResult:
    """Terminal outcome of `wait_for_completion`."""
    success: bool
    task_id: str
    media_url: Optional[str] = None
    cover_url: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    progress: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    poll_count: int = 0
    total_time_ms: int = 0

    @property
    def timed_out(self) -> bool:
        return self.error_code == ErrorCode.TIMEOUT


StatusCallback = Callable[[ProviderStatus], Union[None, Awaitable[None]]]


# ============================================================
# Signing
# ============================================================

def _sha256_hex(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def sign_tc3(
    secret_id: str,
    secret_key: str,
    host: str,
    payload: str,
    timestamp: int,
    service: str = SERVICE,
) -> str:
    """
    Build the TC3-HMAC-SHA256 Authorization header for a JSON POST to `/`.

    Returns:
        The Authorization header value
    """
    date = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
    credential_scope = f"{date}/{service}/tc3_request"

    canonical_request = "\n".join([
        "POST",
        "/",
        "",
        f"content-type:application/json\nhost:{host}\n",
        SIGNED_HEADERS,
        _sha256_hex(payload),
    ])
    string_to_sign = "\n".join([
        ALGORITHM,
        str(timestamp),
        credential_scope,
        _sha256_hex(canonical_request),
    ])

    secret_date = _hmac_sha256(f"TC3{secret_key}".encode("utf-8"), date)
    secret_service = _hmac_sha256(secret_date, service)
    secret_signing = _hmac_sha256(secret_service, "tc3_request")
    signature = hmac.new(
        secret_signing, string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()

    return (
        f"{ALGORITHM} Credential={secret_id}/{credential_scope}, "
        f"SignedHeaders={SIGNED_HEADERS}, Signature={signature}"
    )


# ============================================================
# Client
# ============================================================

class VodAigcClient:
    """
    Provider client for VOD AIGC video generation.

    Usage:
        client = VodAigcClient(config.vod)

        created = await client.create_task(model, request)
        result = await client.wait_for_completion(created.task_id, policy, on_progress)
    """

    def __init__(
        self,
        config: VodConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._http_client = http_client
        self._clock = clock

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.config.request_timeout)
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _send(self, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a signed API call and return the `Response` object.

        Raises:
            ProviderRequestError: network failure or non-2xx HTTP status
            ProviderResponseError: body is not a VOD response envelope
        """
        timestamp = int(self._clock())
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

        headers = {
            "Content-Type": "application/json",
            "Authorization": sign_tc3(
                self.config.secret_id,
                self.config.secret_key,
                self.config.endpoint_host,
                body,
                timestamp,
            ),
            "Host": self.config.endpoint_host,
            "X-TC-Action": action,
            "X-TC-Timestamp": str(timestamp),
            "X-TC-Version": self.config.api_version,
            "X-TC-Region": self.config.region,
        }

        client = await self._get_client()
        try:
            response = await client.post(
                self.config.get_request_url(),
                content=body.encode("utf-8"),
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProviderRequestError(f"VOD {action} timeout: {type(e).__name__}")
        except httpx.RequestError as e:
            raise ProviderRequestError(f"VOD {action} request failed: {type(e).__name__}: {e}")

        if response.status_code >= 400:
            raise ProviderRequestError(
                f"VOD {action} HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise ProviderResponseError(f"VOD {action} returned non-JSON body")

        envelope = data.get("Response") if isinstance(data, dict) else None
        if not isinstance(envelope, dict):
            raise ProviderResponseError(f"VOD {action} response has no Response object")
        return envelope

    # --------------------------------------------------------------------------------
    # Task creation
    # --------------------------------------------------------------------------------

    def build_create_payload(
        self,
        model: VideoModel,
        request: GenerationRequest,
    ) -> dict[str, Any]:
        """Build the CreateAigcVideoTask body for `request`."""
        output = request.output_config
        output_payload = {
            "StorageMode": output.storage_mode,
            "Resolution": output.resolution,
            "EnhanceSwitch": output.enhance_switch,
        }
        if output.aspect_ratio:
            output_payload["AspectRatio"] = output.aspect_ratio

        payload: dict[str, Any] = {
            "SubAppId": self.config.sub_app_id,
            "ModelName": model.model_name,
            "ModelVersion": model.model_version,
            "Prompt": request.prompt,
            "EnhancePrompt": request.enhance_prompt,
            "OutputConfig": output_payload,
        }

        if request.image_urls:
            payload["FileInfos"] = [{"Type": "Url", "Url": url} for url in request.image_urls]

        # Only some models accept a last frame
        if request.last_frame_url and model.support_last_frame:
            payload["LastFrameUrl"] = request.last_frame_url

        if request.scene_type and model.model_name == "Kling":
            payload["SceneType"] = request.scene_type

        return payload

    async def create_task(
        self,
        model: VideoModel,
        request: GenerationRequest,
    ) -> CreateTaskResult:
        """
        Submit a generation task. Never retries.

        Returns:
            CreateTaskResult; on provider rejection `success` is False and
            `error_code` carries the provider's code
        """
        payload = self.build_create_payload(model, request)
        logger.info(f"VOD create task: model={model.id}, prompt={request.prompt[:50]}...")

        try:
            response = await self._send("CreateAigcVideoTask", payload)
        except (ProviderRequestError, ProviderResponseError) as e:
            logger.error(f"VOD create task failed: {e}")
            return CreateTaskResult(success=False, error=str(e), error_code=e.error_code)

        request_id = response.get("RequestId")
        error = response.get("Error")
        if error:
            logger.error(f"VOD create task rejected: {error}")
            return CreateTaskResult(
                success=False,
                request_id=request_id,
                error=error.get("Message") or "Task creation rejected",
                error_code=error.get("Code"),
            )

        task_id = response.get("TaskId")
        if not task_id:
            return CreateTaskResult(
                success=False,
                request_id=request_id,
                error="No TaskId in VOD response",
                error_code=ErrorCode.NO_TASK_ID,
            )

        logger.info(f"VOD task created: {task_id}")
        return CreateTaskResult(success=True, task_id=task_id, request_id=request_id)

    # --------------------------------------------------------------------------------
    # Status
    # --------------------------------------------------------------------------------

    async def get_task_status(self, task_id: str) -> ProviderStatus:
        """
        Read the current status of a task. Side-effect free.

        Raises:
            ProviderRequestError: transport failure (safe to retry)
            ProviderResponseError: unparseable payload
        """
        response = await self._send(
            "DescribeTaskDetail",
            {"TaskId": task_id, "SubAppId": self.config.sub_app_id},
        )
        return parse_task_detail(task_id, response)

    async def wait_for_completion(
        self,
        task_id: str,
        policy: GroupPolicy,
        on_progress: Optional[StatusCallback] = None,
    ) -> CompletionResult:
        """
        Poll until the task is terminal or the group's polling budget runs out.

        `on_progress` receives every observed status, terminal ones included.
        Transport errors consume an attempt and are retried. Running out of
        time or attempts yields a synthetic FAIL with error code TIMEOUT.
        """
        poll_interval = policy.poll_interval_ms / 1000
        started = time.monotonic()
        poll_count = 0
        last_progress = 0

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        while poll_count < policy.max_poll_attempts:
            if elapsed_ms() > policy.poll_timeout_ms:
                return CompletionResult(
                    success=False,
                    task_id=task_id,
                    progress=last_progress,
                    error=f"Polling timed out after {policy.poll_timeout_ms / 1000:.0f}s",
                    error_code=ErrorCode.TIMEOUT,
                    poll_count=poll_count,
                    total_time_ms=elapsed_ms(),
                )

            poll_count += 1
            try:
                status = await self.get_task_status(task_id)
            except ProviderRequestError as e:
                logger.warning(f"VOD poll error for {task_id} (attempt {poll_count}): {e}")
                await asyncio.sleep(poll_interval)
                continue
            except ProviderResponseError as e:
                logger.error(f"VOD poll returned invalid payload for {task_id}: {e}")
                return CompletionResult(
                    success=False,
                    task_id=task_id,
                    progress=last_progress,
                    error=str(e),
                    error_code=e.error_code,
                    poll_count=poll_count,
                    total_time_ms=elapsed_ms(),
                )

            if on_progress:
                result = on_progress(status)
                if asyncio.iscoroutine(result):
                    await result

            if status.status == "FINISH":
                return CompletionResult(
                    success=True,
                    task_id=task_id,
                    media_url=status.media_url,
                    cover_url=status.cover_url,
                    duration=status.duration,
                    resolution=status.resolution,
                    progress=100,
                    poll_count=poll_count,
                    total_time_ms=elapsed_ms(),
                )

            if status.status == "FAIL":
                return CompletionResult(
                    success=False,
                    task_id=task_id,
                    progress=last_progress,
                    error=status.error,
                    error_code=status.error_code,
                    poll_count=poll_count,
                    total_time_ms=elapsed_ms(),
                )

            last_progress = max(last_progress, status.progress)
            await asyncio.sleep(poll_interval)

        return CompletionResult(
            success=False,
            task_id=task_id,
            progress=last_progress,
            error=f"Exceeded {policy.max_poll_attempts} poll attempts",
            error_code=ErrorCode.TIMEOUT,
            poll_count=poll_count,
            total_time_ms=elapsed_ms(),
        )


# ============================================================
# Response parsing
# ============================================================

def _map_status(status: Optional[str]) -> str:
    if status in ("FINISH", "FAIL"):
        return status
    return "PROCESSING"


def parse_task_detail(task_id: str, response: dict[str, Any]) -> ProviderStatus:
    """
    Turn a DescribeTaskDetail `Response` object into a ProviderStatus.

    Handles the AigcVideoTask shape and the older flat shape
    (Status/Output directly under Response).

    Raises:
        ProviderResponseError: payload does not validate
    """
    try:
        return _parse_task_detail(task_id, response)
    except ValidationError as e:
        raise ProviderResponseError(f"Invalid task detail for {task_id}: {e.errors()[0]['msg']}")


def _parse_task_detail(task_id: str, response: dict[str, Any]) -> ProviderStatus:
    error = response.get("Error")
    if error:
        return ProviderStatus(
            task_id=task_id,
            status="FAIL",
            error=error.get("Message") or "Task query failed",
            error_code=error.get("Code"),
        )

    aigc_task = response.get("AigcVideoTask")
    if aigc_task:
        status = _map_status(aigc_task.get("Status"))
        output = aigc_task.get("Output") or {}
        file_info = (output.get("FileInfos") or [{}])[0]
        meta = file_info.get("MetaData") or {}

        media_url = file_info.get("FileUrl")
        cover_url = meta.get("CoverUrl") or output.get("CoverUrl")
        duration = meta.get("Duration") or output.get("Duration")
        width, height = meta.get("Width"), meta.get("Height")
        progress = aigc_task.get("Progress") or 0

        err_code = aigc_task.get("ErrCode")
        if err_code not in (0, None):
            # A non-zero ErrCode is a failure whatever Status says
            return ProviderStatus(
                task_id=aigc_task.get("TaskId") or task_id,
                status="FAIL",
                progress=progress,
                error=aigc_task.get("Message") or f"Task failed (ErrCode {err_code})",
                error_code=aigc_task.get("ErrCodeExt") or str(err_code),
            )

        if status == "FINISH" and not media_url:
            return ProviderStatus(
                task_id=aigc_task.get("TaskId") or task_id,
                status="FAIL",
                progress=progress,
                error="Task finished without a media URL",
                error_code=ErrorCode.NO_MEDIA_URL,
            )

        if status == "FAIL":
            return ProviderStatus(
                task_id=aigc_task.get("TaskId") or task_id,
                status="FAIL",
                progress=progress,
                error=aigc_task.get("Message") or "Video generation failed",
                error_code=aigc_task.get("ErrCodeExt"),
            )

        finished = status == "FINISH"
        return ProviderStatus(
            task_id=aigc_task.get("TaskId") or task_id,
            status=status,
            progress=100 if finished else progress,
            media_url=media_url if finished else None,
            cover_url=cover_url if finished else None,
            duration=duration if finished else None,
            resolution=f"{width}x{height}" if finished and width and height else None,
        )

    # Older flat shape
    status = _map_status(response.get("Status"))
    output = response.get("Output") or {}
    if status == "FAIL":
        return ProviderStatus(
            task_id=task_id,
            status="FAIL",
            progress=response.get("Progress") or 0,
            error=response.get("Message") or "Video generation failed",
            error_code=response.get("ErrCodeExt"),
        )
    if status == "FINISH":
        width, height = output.get("Width"), output.get("Height")
        return ProviderStatus(
            task_id=task_id,
            status="FINISH",
            progress=100,
            media_url=output.get("MediaUrl"),
            cover_url=output.get("CoverUrl"),
            duration=output.get("Duration"),
            resolution=f"{width}x{height}" if width and height else None,
        )
    return ProviderStatus(
        task_id=task_id,
        status="PROCESSING",
        progress=response.get("Progress") or 0,
    )
