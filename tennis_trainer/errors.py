"""
Service-level errors. Each carries the HTTP status the API layer should answer with.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class TranscriptionError(ServiceError):
    pass


class AttributionError(ServiceError):
    pass


class AnalysisFormatError(AttributionError):
    """Claude replied, but not with the analysis structure we asked for."""

    status_code = 502

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class StorageError(ServiceError):
    pass


def vendor_status(exc: Exception) -> int | None:
    """HTTP status attached to an openai/anthropic SDK error, if any."""
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def is_timeout(exc: Exception) -> bool:
    text = f"{type(exc).__name__} {exc}".lower()
    return "timeout" in text or "timed out" in text or "etimedout" in text


def is_connection_error(exc: Exception) -> bool:
    text = str(exc)
    return (
        "Connection" in type(exc).__name__
        or "ECONNRESET" in text
        or "ECONNREFUSED" in text
        or "Connection error" in text
    )
