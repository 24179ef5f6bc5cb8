from __future__ import annotations


class BrokerSyncError(Exception):
    """Base error for the broker sync core."""


class ConfigError(BrokerSyncError):
    pass


class ReportParseError(BrokerSyncError):
    """No recognizable positions table in an imported report."""


class ReconcileBatchError(BrokerSyncError):
    def __init__(self, message: str, *, batch_index: int, size: int) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.size = size


class BrokerError(BrokerSyncError):
    pass


class BrokerConnectionError(BrokerError):
    """Remote terminal handshake failed; nothing was pooled."""

    def __init__(self, message: str, *, account_id: str | None = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class RetryableBrokerError(BrokerError):
    pass


class HealthCheckError(BrokerSyncError):
    pass


class TaskRetryExhaustedError(BrokerSyncError):
    def __init__(self, message: str, *, task_id: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(BrokerSyncError):
    pass
