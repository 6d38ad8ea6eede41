"""Error taxonomy for WMS sync services."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SyncError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def __str__(self) -> str:
        return self.detail

    def to_detail(self) -> dict:
        return {"code": self.code, "detail": self.detail}


class TransientSourceError(SyncError):
    """Network failure, 5xx, exhausted rate-limit waits, or an open circuit."""

    def __init__(self, detail: str, code: str = "source_unavailable"):
        super().__init__(code=code, detail=detail, status_code=503, retryable=True)


class PermanentSourceError(SyncError):
    """4xx other than 429, or a payload that can never be processed."""

    def __init__(self, detail: str, code: str = "source_rejected", status_code: int = 502):
        super().__init__(code=code, detail=detail, status_code=status_code, retryable=False)


class SyncTimeoutError(SyncError):
    def __init__(self, detail: str = "sync deadline exceeded"):
        super().__init__(code="timeout", detail=detail, status_code=504, retryable=True)


class AuthenticationError(SyncError):
    def __init__(self, detail: str = "invalid webhook signature", code: str = "invalid_signature"):
        super().__init__(code=code, detail=detail, status_code=401, retryable=False)


class TenantNotFoundError(SyncError):
    def __init__(self, detail: str):
        super().__init__(code="tenant_not_found", detail=detail, status_code=404, retryable=False)


class SyncAlreadyRunningError(SyncError):
    def __init__(self, detail: str):
        super().__init__(code="sync_running", detail=detail, status_code=409, retryable=True)


class SyncValidationError(SyncError):
    def __init__(self, detail: str, code: str = "invalid_request"):
        super().__init__(code=code, detail=detail, status_code=400, retryable=False)
