class NotificationEngineError(Exception):
    """Base exception for the notification engine."""

    def __init__(self, message: str, error_code: str = "ENGINE_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ConfigurationError(NotificationEngineError):
    """Malformed tenant policy or engine configuration."""

    def __init__(self, message: str, error_code: str = "CONFIG_ERROR"):
        super().__init__(message, error_code)


class NotFoundError(NotificationEngineError):
    """Subject, recipient or template no longer exists."""

    def __init__(
        self, message: str = "Resource not found", error_code: str = "NOT_FOUND"
    ):
        super().__init__(message, error_code)


class ConflictError(NotificationEngineError):
    """An active notification with the same dedup key already exists."""

    def __init__(
        self,
        message: str = "Notification already scheduled",
        error_code: str = "DEDUP_CONFLICT",
    ):
        super().__init__(message, error_code)


class TransportError(NotificationEngineError):
    """The messaging provider rejected or failed to deliver a message."""

    def __init__(self, message: str, error_code: str = "TRANSPORT_ERROR"):
        super().__init__(message, error_code)


class StorageError(NotificationEngineError):
    """Read or write against the backing store failed."""

    def __init__(self, message: str, error_code: str = "DB_ERROR"):
        super().__init__(message, error_code)
