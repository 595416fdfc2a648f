class FinanceError(ValueError):
    """Base class for errors the data-access layer reports to callers."""

    kind = "Error"


class Unauthenticated(FinanceError):
    kind = "Unauthenticated"


class Unauthorized(FinanceError):
    kind = "Unauthorized"


class NotFound(FinanceError):
    kind = "NotFound"


class ValidationError(FinanceError):
    kind = "ValidationError"


class Conflict(FinanceError):
    kind = "Conflict"


class PreconditionFailed(FinanceError):
    kind = "PreconditionFailed"


class StoreError(FinanceError):
    kind = "StoreError"


class Misconfigured(FinanceError):
    kind = "Misconfigured"


STATUS_BY_KIND: dict[str, int] = {
    Unauthenticated.kind: 401,
    Unauthorized.kind: 403,
    NotFound.kind: 404,
    ValidationError.kind: 400,
    Conflict.kind: 409,
    PreconditionFailed.kind: 412,
    StoreError.kind: 500,
    Misconfigured.kind: 500,
}
