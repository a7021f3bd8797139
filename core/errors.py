"""Exception types shared by the generation pipeline."""

from typing import Optional


class ErrorCode:
    """Error codes produced by this system (provider codes are passed through as-is)."""
    AUTH_REQUIRED = "AUTH_REQUIRED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    UNSUPPORTED_INPUT = "UNSUPPORTED_INPUT"
    TIMEOUT = "TIMEOUT"
    NO_TASK_ID = "NO_TASK_ID"
    NO_MEDIA_URL = "NO_MEDIA_URL"
    REQUEST_ERROR = "REQUEST_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

    # Relocation
    FETCH_FAILED = "FETCH_FAILED"
    SIZE_LIMIT_EXCEEDED = "SIZE_LIMIT_EXCEEDED"
    MIME_NOT_ALLOWED = "MIME_NOT_ALLOWED"
    STORAGE_FAILED = "STORAGE_FAILED"


class VideoGenerationError(Exception):
    """Raised when video generation fails."""

    def __init__(self, message: str, error_code: str = None, provider: str = None):
        self.error_code = error_code
        self.provider = provider
        super().__init__(message)


class AuthRequiredError(VideoGenerationError):
    """The caller has no valid session; nothing may be sent to the provider."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, error_code=ErrorCode.AUTH_REQUIRED)


class ModelUnavailableError(VideoGenerationError):
    """Unknown model id, or a model whose group has no policy."""

    def __init__(self, message: str):
        super().__init__(message, error_code=ErrorCode.MODEL_UNAVAILABLE)


class UnsupportedInputError(VideoGenerationError):
    """The model cannot take the request's images, resolution or last frame."""

    def __init__(self, message: str):
        super().__init__(message, error_code=ErrorCode.UNSUPPORTED_INPUT)


class ProviderRequestError(VideoGenerationError):
    """Transport-level failure talking to the provider (network, HTTP status)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, error_code=ErrorCode.REQUEST_ERROR, provider="vod")


class ProviderResponseError(VideoGenerationError):
    """The provider answered with a payload we cannot interpret."""

    def __init__(self, message: str):
        super().__init__(message, error_code=ErrorCode.INVALID_RESPONSE, provider="vod")


class InvalidTransitionError(Exception):
    """A task status change that would leave a terminal state."""


class StorageError(Exception):
    """Raised by object storage backends when an upload fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RelocationError(VideoGenerationError):
    """Moving media to permanent storage failed; `error_code` says at which step."""
