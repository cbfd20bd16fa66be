class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class DuplicateSerialError(AppError):
    """Serial/IMEI number already registered for this tenant."""

    def __init__(self, serial_number: str):
        super().__init__(f"Serial number already registered: {serial_number}")
        self.serial_number = serial_number


class NotAuthenticatedError(AppError):
    pass


class AuthorizationError(AppError):
    pass


class InvalidTransitionError(AppError):
    pass


class FxUnavailableError(AppError):
    pass
