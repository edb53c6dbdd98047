class AppError(Exception):
    status_code = 500
    default_message = "internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "invalid request"


class UnauthorizedError(AppError):
    status_code = 401
    default_message = "unauthorized"


class InvalidCredentialsError(UnauthorizedError):
    default_message = "invalid email or password"


class NotFoundError(AppError):
    status_code = 404
    default_message = "not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "conflict"


class InsufficientStockError(ConflictError):
    default_message = "insufficient quantity in stock"


class PersistenceError(AppError):
    status_code = 500

    def __init__(self, detail=None):
        # detail goes to the log only
        self.detail = detail
        super().__init__()


class PersistenceTimeoutError(PersistenceError, TimeoutError):
    status_code = 503
    default_message = "service temporarily unavailable"
