"""
Ingress unmasking: resolve tokens back to real values before a
model-issued instruction reaches the LMS.

Current, legacy (colon) and bare tokens are all accepted. A token whose
anchor id is not on the roster, or whose field the person lacks (no
email on record, say), is left exactly as written.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

import regex

from edmcp_pii.core import tokens
from edmcp_pii.core.errors import UNRESOLVED_TOKEN, Diagnostic, UnsupportedValueError
from edmcp_pii.core.roster_index import RosterIndex

logger = logging.getLogger("edmcp_pii.core.unmasker")


@dataclass
class UnmaskReport:
    substitutions: int = 0
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def unresolved(self) -> List[str]:
        return [d.detail["token"] for d in self.diagnostics if d.kind == UNRESOLVED_TOKEN]

    def to_dict(self) -> dict:
        return {
            "substitutions": self.substitutions,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


class Unmasker:
    """
    Replaces tokens with roster values.

    `escape` is applied to each substituted value, e.g. XML escaping when
    the text is the body of an office document entry.
    """

    def __init__(self, index: Optional[RosterIndex], escape: Optional[Callable[[str], str]] = None):
        self.index = index
        self.escape = escape
        self.report = UnmaskReport()

    def unmask(self, value: Any) -> Any:
        """
        Unmasks a value recursively, keys included.

        Raises:
            UnsupportedValueError: for a value outside strings, numbers,
                                   booleans, None, lists, tuples and dicts.
        """
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, str):
            return self.unmask_text(value)
        if isinstance(value, (list, tuple)):
            return [self.unmask(item) for item in value]
        if isinstance(value, dict):
            return {
                (self.unmask_text(key) if isinstance(key, str) else key): self.unmask(item)
                for key, item in value.items()
            }
        raise UnsupportedValueError(f"Cannot unmask value of type {type(value).__name__}")

    def unmask_text(self, text: str) -> str:
        if not text or self.index is None:
            return text
        return tokens.TOKEN_SCAN_PATTERN.sub(self._replace, text)

    def _replace(self, match: regex.Match) -> str:
        raw = match.group(0)
        token = tokens.decode(raw)
        if token is None:
            return raw

        value = self.index.value_for(token)
        if not value:
            if raw not in self.report.unresolved:
                logger.warning("Token %s could not be resolved against the roster", raw)
                self.report.diagnostics.append(Diagnostic(
                    kind=UNRESOLVED_TOKEN,
                    message="Token does not match a roster value and was left unchanged",
                    detail={"token": raw},
                ))
            return raw

        self.report.substitutions += 1
        return self.escape(value) if self.escape else value


def unmask(value: Any, index: Optional[RosterIndex]) -> Any:
    """Unmasks a value or text. Without an index the value is returned unchanged."""
    return Unmasker(index).unmask(value)


def unmask_with_report(value: Any, index: Optional[RosterIndex]) -> Tuple[Any, UnmaskReport]:
    unmasker = Unmasker(index)
    return unmasker.unmask(value), unmasker.report
