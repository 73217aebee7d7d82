from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class LifecycleError(Exception):
    """Base class for retention lifecycle errors."""


class ValidationError(LifecycleError):
    """Malformed category, rule or reminder definition. Never persisted."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class InvariantViolation(LifecycleError):
    """Operation would break a lifecycle invariant; it is rejected as a no-op."""


class CollaboratorFailure(LifecycleError):
    """An external collaborator call failed."""


class CollaboratorTimeout(CollaboratorFailure):
    def __init__(self, operation: str | None = None, future=None):
        super().__init__("timeout")
        self.operation = operation
        # The call that is still running, if any.
        self.future = future


class EntityNotFound(CollaboratorFailure):
    def __init__(self, entity: str, identifier):
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        # exc.errors() ctx may contain raw Exception objects (not JSON-serialisable).
        errors = [
            {k: str(v) if k == "ctx" else v for k, v in err.items()}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", errors),
        )

    @app.exception_handler(ValidationError)
    async def definition_exception_handler(request: Request, exc: ValidationError):
        details = {"field": exc.field} if exc.field else None
        return JSONResponse(
            status_code=400,
            content=_error_payload("invalid_definition", str(exc), details),
        )

    @app.exception_handler(InvariantViolation)
    async def invariant_exception_handler(request: Request, exc: InvariantViolation):
        return JSONResponse(
            status_code=409,
            content=_error_payload("invariant_violation", str(exc), None),
        )

    @app.exception_handler(EntityNotFound)
    async def not_found_exception_handler(request: Request, exc: EntityNotFound):
        return JSONResponse(
            status_code=404,
            content=_error_payload(
                "not_found", str(exc), {"entity": exc.entity}
            ),
        )

    @app.exception_handler(CollaboratorFailure)
    async def collaborator_exception_handler(
        request: Request, exc: CollaboratorFailure
    ):
        return JSONResponse(
            status_code=502,
            content=_error_payload("collaborator_failure", str(exc), None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
