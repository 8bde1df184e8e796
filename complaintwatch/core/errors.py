from __future__ import annotations

from dataclasses import dataclass


class ComplaintWatchError(Exception):
    """Base error for complaintwatch."""


class IncompleteCredential(ComplaintWatchError):
    """Tenant credential is missing key or certificate material."""

    def __init__(self, tenant_id: int, missing: list[str]) -> None:
        super().__init__(f"tenant {tenant_id} credential incomplete: missing {', '.join(missing)}")
        self.tenant_id = tenant_id
        self.missing = missing


class ProviderConfigError(ComplaintWatchError):
    """Key or certificate material could not be loaded into a provider client."""


class LockNotAcquired(ComplaintWatchError):
    """Another holder owns the complaint lock (``acquire`` returns ``None`` for it)."""


class LockLost(ComplaintWatchError):
    """Lock ownership was lost while work was still in progress."""

    def __init__(self, key: str) -> None:
        super().__init__(f"lock lost: {key}")
        self.key = key


class CoordinationStoreError(ComplaintWatchError):
    """Coordination store (Redis) call failed."""


class ProviderCallFailed(ComplaintWatchError):
    """Provider API call failed at the transport or business level."""

    def __init__(self, method: str, message: str, *, code: str | None = None) -> None:
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code


class PersistenceFailed(ComplaintWatchError):
    """Transactional write failed and was rolled back."""


class NoOrderLines(ComplaintWatchError):
    """Complaint detail carried no order lines."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"complaint {task_id} has no order lines")
        self.task_id = task_id


@dataclass(frozen=True)
class WorkerFault:
    """Fault that escaped a worker's tick boundary."""

    tenant_id: int
    error: BaseException

    def describe(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"
