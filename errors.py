class EngineError(Exception):
    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(EngineError, ValueError):
    code = "not-found"


class InvalidInputError(EngineError, ValueError):
    code = "invalid-argument"


class PreconditionError(EngineError):
    code = "failed-precondition"


class PermissionDeniedError(EngineError):
    code = "permission-denied"


class AuthenticationError(EngineError):
    code = "unauthenticated"
