"""Pattern scan applied to candidate input before schema validation.

A first-line heuristic only. The business layer still relies on
parameterized queries and output encoding.
"""

import json
import re
from typing import Any, Optional

from matchguard.app.core.config import settings
from matchguard.app.core.logging import get_logger
from matchguard.app.exceptions import ValidationError, ValidationException

logger = get_logger(__name__)

SECURITY_PATTERNS: list[tuple[str, re.Pattern]] = [
    # Cross-site scripting
    ("xss_script", re.compile(r"<script\b", re.IGNORECASE)),
    ("xss_iframe", re.compile(r"<iframe\b", re.IGNORECASE)),
    ("xss_javascript_uri", re.compile(r"javascript:", re.IGNORECASE)),
    ("xss_data_uri", re.compile(r"data:text/html", re.IGNORECASE)),
    # SQL injection: a statement keyword followed later by a clause word
    (
        "sql_statement",
        re.compile(
            r"\b(union|select|insert|update|delete|drop|create|alter|exec|execute)\b",
            re.IGNORECASE,
        ),
    ),
    ("sql_tautology", re.compile(r"\b(or|and)\s+\d+\s*=\s*\d+", re.IGNORECASE)),
    # Path traversal
    ("path_traversal", re.compile(r"\.\.[/\\]")),
    # Command injection
    ("shell_metacharacter", re.compile(r"[;&|`$()]")),
]

# Searched from the end of the first statement keyword, keeping the scan linear
SQL_CLAUSE = re.compile(r"\b(from|where|into|values)\b", re.IGNORECASE)

SAMPLE_LENGTH = 200


def _matches(name: str, pattern: re.Pattern, serialized: str) -> bool:
    match = pattern.search(serialized)
    if match is None:
        return False
    if name == "sql_statement":
        return SQL_CLAUSE.search(serialized, match.end()) is not None
    return True


def scan_payload(
    data: Any, max_bytes: Optional[int] = None, check_patterns: bool = True
) -> str:
    """Reject oversized or malicious input.

    The size cap is checked first so the pattern scan only ever sees
    payloads within the cap.

    Args:
        data: Parsed JSON body or query mapping
        max_bytes: Serialized size cap; defaults to settings
        check_patterns: False skips the pattern scan but keeps the size cap,
            for signed provider payloads whose content is not user input

    Returns:
        The serialized form that was scanned

    Raises:
        ValidationException: payload_too_large (413) or security_violation (400)
    """
    serialized = json.dumps(
        data, separators=(",", ":"), ensure_ascii=False, default=str
    )
    max_bytes = max_bytes or settings.validation_max_payload_bytes

    if len(serialized.encode()) > max_bytes:
        raise ValidationException(
            [
                ValidationError(
                    field="size",
                    message="Request payload too large",
                    code="payload_too_large",
                )
            ],
            status_code=413,
        )

    for name, pattern in SECURITY_PATTERNS if check_patterns else ():
        if _matches(name, pattern, serialized):
            logger.error(
                "Potentially malicious input detected",
                extra={"pattern": name, "input_sample": serialized[:SAMPLE_LENGTH]},
            )
            raise ValidationException(
                [
                    ValidationError(
                        field="security",
                        message="Input contains potentially malicious content",
                        code="security_violation",
                    )
                ],
                status_code=400,
            )

    return serialized
