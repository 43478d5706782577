"""Error taxonomy shared by every layer.

Each error carries a human-readable message and the HTTP status the routing
layer should answer with.
"""
from __future__ import annotations


class PipelineError(Exception):
    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PipelineError):
    status_code = 400


class UnsupportedOperationError(PipelineError):
    status_code = 400


class UnauthorizedError(PipelineError):
    status_code = 401


class NotFoundError(PipelineError):
    status_code = 404


class ConflictError(PipelineError):
    status_code = 409


class ProcessingFailedError(PipelineError):
    status_code = 500


class ExternalServiceError(PipelineError):
    """Failure of an AI/LLM/storage backend.

    `upstream_status` keeps the status code reported by the remote side (if any)
    so retry classification can tell client errors from transient ones.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.upstream_status = upstream_status


class MalformedResponseError(ExternalServiceError):
    status_code = 502
