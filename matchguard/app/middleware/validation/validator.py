"""Request validation: security scan, then schema validation.

Schema validation is exhaustive. Every failing field is reported in one
ValidationException rather than stopping at the first.
"""

import json
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request

from matchguard.app.core.logging import get_logger
from matchguard.app.exceptions import ValidationError, ValidationException
from matchguard.app.middleware.validation.metrics import validation_metrics
from matchguard.app.middleware.validation.security import scan_payload

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
R = TypeVar("R")

SUSPICIOUS_HEADERS = ("x-forwarded-host", "x-original-url", "x-rewrite")


def errors_from_pydantic(exc: PydanticValidationError) -> list[ValidationError]:
    """Convert pydantic errors to field-level ValidationErrors."""
    return [
        ValidationError(
            field=".".join(str(part) for part in err["loc"]),
            message=err["msg"],
            code=err["type"],
            value=err.get("input"),
        )
        for err in exc.errors()
    ]


class RequestValidator:
    """Validates bodies, query strings and headers against schemas."""

    @classmethod
    async def validate_body(
        cls,
        request: Request,
        schema: type[ModelT],
        max_bytes: Optional[int] = None,
        check_patterns: bool = True,
    ) -> ModelT:
        start = time.perf_counter()
        raw = await request.body()
        try:
            body = json.loads(raw)
        except ValueError as e:
            cls._record(start, success=False)
            raise ValidationException(
                [ValidationError(field="body", message="Invalid JSON format", code="invalid_json")]
            ) from e

        model = cls._validate(
            start, body, schema, max_bytes, source="body", check_patterns=check_patterns
        )
        logger.debug("Request body validated successfully")
        return model

    @classmethod
    def validate_query(
        cls, request: Request, schema: type[ModelT], max_bytes: Optional[int] = None
    ) -> ModelT:
        start = time.perf_counter()
        query = dict(request.query_params)
        model = cls._validate(start, query, schema, max_bytes, source="query")
        logger.debug("Query parameters validated successfully")
        return model

    @staticmethod
    def validate_headers(request: Request, required: Iterable[str] = ()) -> None:
        """Require headers to be present; suspicious headers are only logged."""
        missing = [name for name in required if name not in request.headers]
        if missing:
            raise ValidationException(
                [
                    ValidationError(
                        field="headers",
                        message=f"Missing required headers: {', '.join(missing)}",
                        code="missing_headers",
                    )
                ]
            )

        for name in SUSPICIOUS_HEADERS:
            if name in request.headers:
                logger.warning(f"Suspicious header detected: {name}")

    @classmethod
    def _validate(
        cls,
        start: float,
        data: Any,
        schema: type[ModelT],
        max_bytes: Optional[int],
        source: str,
        check_patterns: bool = True,
    ) -> ModelT:
        try:
            scan_payload(data, max_bytes, check_patterns)
        except ValidationException as e:
            cls._record(start, success=False, security_violation=e.is_security_violation)
            raise

        try:
            model = schema.model_validate(data)
        except PydanticValidationError as e:
            errors = errors_from_pydantic(e)
            cls._record(start, success=False)
            logger.warning(
                f"Request {source} validation failed",
                extra={"errors": [err.to_dict() for err in errors]},
            )
            raise ValidationException(errors) from e

        cls._record(start, success=True)
        return model

    @staticmethod
    def _record(start: float, success: bool, security_violation: bool = False) -> None:
        elapsed_ms = (time.perf_counter() - start) * 1000
        validation_metrics.record_validation(success, elapsed_ms, security_violation)


async def with_validation(
    request: Request,
    schema: type[ModelT],
    handler: Callable[[ModelT], Awaitable[R]],
    *,
    validate_body: bool = True,
    validate_query: bool = False,
    required_headers: Iterable[str] = (),
) -> R:
    """Validate the request, then call handler with the parsed model.

    Validation errors propagate unchanged. Any other failure during
    validation becomes a 500 validation_error. Handler errors propagate.
    """
    try:
        RequestValidator.validate_headers(request, required_headers)
        if validate_query:
            data = RequestValidator.validate_query(request, schema)
        elif validate_body:
            data = await RequestValidator.validate_body(request, schema)
        else:
            raise ValueError("Must specify either validate_body or validate_query")
    except ValidationException as e:
        logger.warning(
            "Validation rejected request",
            extra={"errors": [err.to_dict() for err in e.errors]},
        )
        raise
    except Exception as e:
        logger.error(f"Unexpected validation error: {e}", exc_info=True)
        raise ValidationException(
            [
                ValidationError(
                    field="unknown",
                    message="Validation failed due to unexpected error",
                    code="validation_error",
                )
            ],
            status_code=500,
        ) from e

    return await handler(data)
