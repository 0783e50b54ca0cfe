from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


log = structlog.get_logger("safetyhub.errors")


class LifecycleError(Exception):
    """Base class for every failure the report lifecycle can produce."""

    code = "lifecycle_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "code": self.code, "retryable": self.retryable}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class NotFound(LifecycleError):
    code = "not_found"
    status_code = 404


class PermissionDenied(LifecycleError):
    code = "forbidden"
    status_code = 403


class ValidationFailed(LifecycleError):
    code = "validation_failed"
    status_code = 422


class PreconditionFailed(LifecycleError):
    """The current state does not permit the action. Nothing was changed."""

    code = "precondition_failed"
    status_code = 409


class PersistenceFailure(LifecycleError):
    """The store rejected the first write. Nothing was changed."""

    code = "persistence_failure"
    status_code = 503
    retryable = True


class PartialFailure(LifecycleError):
    """
    A later write failed after earlier writes of the same transition had been
    applied. The transaction is rolled back before this is raised, so the
    rows are back in their pre-transition state and the call can be retried.
    """

    code = "partial_failure"
    status_code = 503
    retryable = True

    def __init__(self, message: str, applied: Optional[List[str]] = None, **details: Any):
        super().__init__(message, applied=list(applied or []), compensated=True, **details)

    @property
    def applied(self) -> List[str]:
        return self.details["applied"]


class InvariantViolation(LifecycleError):
    code = "invariant_violation"
    status_code = 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LifecycleError)
    async def lifecycle_exc_handler(request: Request, exc: LifecycleError):
        request_id = getattr(request.state, "request_id", None)
        level = "error" if exc.status_code >= 500 else "warning"
        getattr(log, level)(
            "lifecycle.error",
            method=request.method,
            path=request.url.path,
            status=exc.status_code,
            code=exc.code,
            message=exc.message,
        )
        headers = {"X-Request-ID": request_id} if request_id else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)
