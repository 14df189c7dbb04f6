"""Centralized error handling utilities."""

import functools
import logging
import traceback
from collections.abc import Callable
from typing import Any, overload

from flask import current_app, has_app_context, jsonify
from flask.wrappers import Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from fleetctl.exceptions import (
    BusinessLogicException,
    InvalidOperationException,
    PersistenceException,
    RecordExistsException,
    RecordNotFoundException,
    SignatureException,
    StateConflictException,
    TenantException,
    ValidationException,
)
from fleetctl.utils import get_current_correlation_id

logger = logging.getLogger(__name__)


def _build_error_response(
    error: str,
    details: dict[str, Any],
    code: str | None = None,
    status_code: int = 400,
) -> tuple[Response, int]:
    """Build error response with correlation ID and optional error code."""
    response_data: dict[str, Any] = {
        "error": error,
        "details": details,
    }

    # Add error code if provided
    if code:
        response_data["code"] = code

    correlation_id = get_current_correlation_id()
    if correlation_id:
        response_data["correlationId"] = correlation_id

    return jsonify(response_data), status_code


def _mark_request_failed() -> None:
    """Flag the request session so teardown rolls back instead of committing."""
    if not has_app_context():
        return
    container = getattr(current_app, "container", None)
    if container is None:
        return
    container.db_session().info["needs_rollback"] = True


def _convert_exception(error: Exception, include_stack: bool) -> tuple[Response, int]:
    try:
        raise error
    except ValidationError as e:
        # Pydantic validation errors
        error_details = []
        for item in e.errors():
            field = ".".join(str(x) for x in item["loc"])
            error_details.append({"message": item["msg"], "field": field})

        return _build_error_response(
            "Validation failed", {"errors": error_details}, status_code=400
        )

    except (RecordNotFoundException, TenantException) as e:
        return _build_error_response(
            e.message,
            {"message": "The requested resource could not be found"},
            code=e.error_code,
            status_code=404,
        )

    except RecordExistsException as e:
        return _build_error_response(
            e.message,
            {"message": "The resource already exists"},
            code=e.error_code,
            status_code=409,
        )

    except StateConflictException as e:
        # Must precede InvalidOperationException, its base class
        return _build_error_response(
            e.message,
            {"message": "The operation is not valid in the current state", "state": e.current_state},
            code=e.error_code,
            status_code=409,
        )

    except InvalidOperationException as e:
        return _build_error_response(
            e.message,
            {"message": "The requested operation cannot be performed"},
            code=e.error_code,
            status_code=400,
        )

    except ValidationException as e:
        return _build_error_response(
            e.message,
            {"message": "Validation failed"},
            code=e.error_code,
            status_code=400,
        )

    except SignatureException as e:
        return _build_error_response(
            e.message,
            {"message": "Signature verification failed"},
            code=e.error_code,
            status_code=401,
        )

    except PersistenceException as e:
        return _build_error_response(
            e.message,
            {"message": "The database is unavailable"},
            code=e.error_code,
            status_code=503,
        )

    except SQLAlchemyError as e:
        wrapped = PersistenceException("complete the request", type(e).__name__)
        return _build_error_response(
            wrapped.message,
            {"message": "The database is unavailable"},
            code=wrapped.error_code,
            status_code=503,
        )

    except BusinessLogicException as e:
        # Generic business logic exception (fallback for custom exceptions)
        return _build_error_response(
            e.message,
            {"message": "A business logic operation failed"},
            code=e.error_code,
            status_code=400,
        )

    except Exception as e:
        details: dict[str, Any] = {"message": str(e)}
        if include_stack:
            details["stack"] = "".join(traceback.format_exception(e))
        return _build_error_response("Internal server error", details, status_code=500)


@overload
def handle_api_errors(func: Callable[..., Any]) -> Callable[..., Any]: ...


@overload
def handle_api_errors(
    func: None = None, *, include_stack: bool = False
) -> Callable[[Callable[..., Any]], Callable[..., Any]]: ...


def handle_api_errors(
    func: Callable[..., Any] | None = None,
    *,
    include_stack: bool = False,
) -> Any:
    """Decorator to handle common API errors consistently.

    Handles ValidationError, custom exceptions, and generic exceptions
    with appropriate HTTP status codes and error messages. Operator-facing
    endpoints pass include_stack=True to expose stack traces of unexpected
    errors in the response details.
    """

    def decorator(inner: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(inner)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return inner(*args, **kwargs)
            except Exception as e:
                # Log all exceptions with stack trace
                logger.error("Exception in %s: %s", inner.__name__, str(e), exc_info=True)
                _mark_request_failed()
                return _convert_exception(e, include_stack)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
