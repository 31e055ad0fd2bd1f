"""
Error types and diagnostics for the PII layer.

Masking and unmasking degrade instead of failing: engines record a
Diagnostic and keep going, and the exceptions below are caught at the
public boundary of the component that raises them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict

AMBIGUOUS_VARIATION = "ambiguous_variation"
UNRESOLVED_TOKEN = "unresolved_token"
NO_COURSE_CONTEXT = "no_course_context"
UNSUPPORTED_FILE_FORMAT = "unsupported_file_format"
MALFORMED_ARCHIVE = "malformed_archive"


class PiiError(Exception):
    """Base class for PII layer errors."""


class NoCourseContext(PiiError):
    """Raised when a roster lookup is requested without a course scope."""


class UnsupportedFileFormat(PiiError):
    """Raised when a file can be neither parsed nor decoded as text."""


class MalformedArchive(PiiError):
    """Raised when an office container or one of its content entries is unreadable."""

    def __init__(self, message: str, entry: str | None = None):
        super().__init__(message)
        self.entry = entry


class UnsupportedValueError(PiiError, TypeError):
    """Raised when a structured value contains a kind outside the JSON value set."""


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal finding surfaced for operator review. Never carries raw PII."""

    kind: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "detail": dict(self.detail)}
