"""Error taxonomy for the IDEX sync core."""


class IdexSyncError(Exception):
    """Base class for every error raised by the sync core."""


class AuthRejected(IdexSyncError):
    """Panel answered 409: bad credentials or locked account. Never retried."""


class RateLimited(IdexSyncError):
    """Panel answered 429."""


class AuthFailed(IdexSyncError):
    """Login failed (network, 5xx, no session in the response); also raised once retries run out."""


class FetchFailed(IdexSyncError):
    """A transactions page could not be fetched; also raised once retries run out."""


class MalformedResponse(IdexSyncError):
    """Response body had an unexpected shape. The client downgrades this to an empty page."""


class CabinetNotFound(IdexSyncError):
    def __init__(self, cabinet_id: int):
        super().__init__(f"Cabinet {cabinet_id} not found")
        self.cabinet_id = cabinet_id


class NoCabinets(IdexSyncError):
    def __init__(self) -> None:
        super().__init__("No cabinets to synchronize")


class CabinetTimeout(IdexSyncError):
    def __init__(self, cabinet_id: int, seconds: float):
        super().__init__(f"Cabinet {cabinet_id} sync timed out after {seconds:g}s")
        self.cabinet_id = cabinet_id
        self.seconds = seconds


class SyncCancelled(IdexSyncError):
    """The worker was asked to stop between pages."""


class RetryExhausted(IdexSyncError):
    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


# Retrying these cannot change the outcome
NON_RETRYABLE: tuple[type[BaseException], ...] = (AuthRejected, CabinetNotFound, SyncCancelled)
