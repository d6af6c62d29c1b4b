"""Error taxonomy for the conversion pipeline.

Every error raised at a stage boundary is one of these kinds. Each carries the
HTTP status and JSON payload the HTTP shell returns to the caller.
"""

from typing import Any


class ConvertServiceError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class ValidationError(ConvertServiceError):
    """Missing or malformed request fields. No workspace or subprocess is ever created."""

    status_code = 400
    code = "validation_error"


class UnsupportedContentType(ValidationError):
    status_code = 415
    code = "unsupported_media_type"


class StagingError(ConvertServiceError):
    """Input could not be acquired: upload stream error or remote fetch failure."""

    status_code = 400
    code = "staging_error"


class PayloadTooLarge(StagingError):
    status_code = 413
    code = "payload_too_large"


class SourceReadError(StagingError):
    code = "source_read_error"


class DestinationWriteError(ConvertServiceError):
    code = "destination_write_error"


class ConversionFailure(ConvertServiceError):
    """The converter produced no artifact, or one that could not be read."""

    status_code = 500
    code = "conversion_failed"

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
        signal: str | None = None,
        cause: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.signal = signal
        self.cause = cause

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        diagnostics: dict[str, Any] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "signal": self.signal,
        }
        if self.cause is not None:
            diagnostics["cause"] = self.cause
        payload["diagnostics"] = diagnostics
        return payload


class DeadlineExceeded(ConvertServiceError, TimeoutError):
    """A deadline scope expired before its operation finished."""

    status_code = 504
    code = "timeout"


class OperationCancelled(ConvertServiceError):
    """The operation was cancelled by its caller rather than by a deadline."""

    status_code = 499
    code = "cancelled"


class UploadForwardingError(ConvertServiceError):
    """The forward-upload leg to the caller-supplied URL failed."""

    status_code = 502
    code = "upload_forwarding_error"
