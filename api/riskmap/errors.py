"""Error kinds raised and reported by the pin console."""


class ConsoleError(Exception):
    """Base class for console failures."""

    error_code = "CONSOLE_ERROR"


class ValidationError(ConsoleError):
    error_code = "VALIDATION_ERROR"


class LimitExceeded(ConsoleError):
    error_code = "LIMIT_EXCEEDED"


class NotFoundError(ConsoleError):
    error_code = "NOT_FOUND"


class PersistenceError(ConsoleError):
    error_code = "PERSISTENCE_ERROR"


class GeocodeUnavailable(ConsoleError):
    """Provider call failed; ``offline`` when the provider could not be reached at all."""

    error_code = "GEOCODE_UNAVAILABLE"

    def __init__(self, message: str, offline: bool = False):
        super().__init__(message)
        self.offline = offline


class MapInitError(ConsoleError):
    error_code = "MAP_INIT_ERROR"


class StoreError(ConsoleError):
    """Failure reported by a realtime pin query, shaped as {code, message}."""

    error_code = "STORE_ERROR"

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}
