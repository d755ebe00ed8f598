from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


def not_found(entity: str, entity_id: str) -> ApiError:
    return ApiError(
        code=f"{entity.upper()}_NOT_FOUND",
        message=f"{entity} {entity_id} not found",
        error_class="not_found",
        retryable=False,
        http_status=404,
    )


def invalid_operation(message: str) -> ApiError:
    return ApiError(
        code="INVALID_OPERATION",
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def concurrency_conflict(entity: str, entity_id: str) -> ApiError:
    return ApiError(
        code="CONCURRENCY_CONFLICT",
        message=f"{entity} {entity_id} was modified concurrently; retry the request",
        error_class="transient",
        retryable=True,
        http_status=409,
    )


class EventPublishError(RuntimeError):
    """Raised by the publisher when the broker rejects or does not acknowledge in time."""


class VersionConflictError(RuntimeError):
    def __init__(self, *, entity: str, entity_id: str, expected_version: int | None) -> None:
        super().__init__(f"{entity} {entity_id} version conflict (expected {expected_version})")
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


class PersistenceError(RuntimeError):
    """Raised when a write must be redelivered rather than absorbed."""
