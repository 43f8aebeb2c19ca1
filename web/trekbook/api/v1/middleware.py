import logging
import uuid

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from trekbook.core import BaseError

logger = logging.getLogger(__name__)

CLIENT_COOKIE = "checkout_cid"


class CheckoutClientMiddleware(BaseHTTPMiddleware):
    """Middleware to extract and manage the checkout client id.

    The id names one browser profile; every tab of that profile shares its
    draft slot.
    """

    def __init__(self, app, secure: bool = False, max_age: int = 31536000):
        super().__init__(app)
        self.secure = secure
        self.max_age = max_age

    async def dispatch(self, request: Request, call_next):
        client_id = request.cookies.get(CLIENT_COOKIE)

        # If not found, generate a new one
        if not client_id:
            client_id = uuid.uuid4().hex

        # Store in request state for use in route handlers
        request.state.client_id = client_id

        response = await call_next(request)

        if not request.cookies.get(CLIENT_COOKIE):
            response.set_cookie(
                CLIENT_COOKIE,
                client_id,
                max_age=self.max_age,  # 1 year
                httponly=True,
                secure=self.secure,
                samesite="lax"
            )

        return response


def error_response(request: Request, exc: BaseError) -> JSONResponse:
    if exc.presentation == "critical":
        logger.critical("%s %s: %s %s", request.method, request.url.path, exc.message, exc.details)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "details": exc.details,
            "kind": exc.kind,
            "presentation": exc.presentation,
        }
    )


async def exception_handler(request: Request, call_next):
    """Global exception handler middleware"""
    try:
        return await call_next(request)
    except BaseError as exc:
        # Handle our custom exceptions
        return error_response(request, exc)
    except Exception as exc:
        # Handle unexpected exceptions
        logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "details": {},
                "kind": "error",
                "presentation": "modal",
            }
        )


async def base_error_handler(request: Request, exc: BaseError):
    """Handler for application errors raised by routes and dependencies"""
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handler for request validation errors"""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "details": {"errors": errors},
            "kind": "validation",
            "presentation": "inline",
        }
    )
