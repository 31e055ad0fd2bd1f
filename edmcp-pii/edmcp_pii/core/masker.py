"""
Egress masking: replace roster PII with tokens before data reaches the model.

Known names, emails and student ids become reversible tokens
(M<id>_name, M<id>_email, M<id>_CID, G<id>_name). Whatever still looks
like PII afterwards gets an irreversible partial mask:

    unknown email        unknown.person@gmail.com -> unk**@gmail.com
    unknown student id   C00999888                -> C***888
    unknown person name  Dr. Unknown Person       -> Dr. Unk*** Per***
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set, Tuple

import regex

from edmcp_pii.core.config import DEFAULT_STUDENT_ID_PATTERN
from edmcp_pii.core.errors import AMBIGUOUS_VARIATION, Diagnostic, UnsupportedValueError
from edmcp_pii.core.roster_index import AMBIGUOUS, RosterIndex
from edmcp_pii.core.variations import normalize

logger = logging.getLogger("edmcp_pii.core.masker")

EMAIL_PATTERN = regex.compile(r"(?<![\w.+-])[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}\b")

TITLE_NAME_PATTERN = regex.compile(
    r"\b(Dr|Mr|Mrs|Ms|Prof|Professor)\.?[ \t]+(\p{Lu}\p{Ll}[\p{L}'’-]*(?:[ \t]+\p{Lu}\p{Ll}[\p{L}'’-]*){0,2})"
)

# Runs of two or more capitalized words on one line.
CAPITALIZED_RUN = regex.compile(
    r"(?<![\w-])\p{Lu}\p{Ll}[\p{L}'’-]*(?:[ \t]+\p{Lu}\p{Ll}[\p{L}'’-]*)+(?![\w-])"
)

_WORD_SPLIT = regex.compile(r"([ \t]+)")


def redact_name(name: str) -> str:
    """'Jackson Smith' -> 'Jac*** Smi***'. Short parts keep at least one letter hidden."""
    masked = []
    for part in name.split():
        keep = min(3, max(1, len(part) - 1))
        masked.append(part[:keep] + "***")
    return " ".join(masked)


def redact_student_id(student_id: str) -> str:
    """'C00123456' -> 'C***456'."""
    return student_id[0].upper() + "***" + student_id[-3:]


def redact_email(email: str) -> str:
    """'jackson.smith@louisiana.edu' -> 'jac**@louisiana.edu'."""
    local, at, domain = email.partition("@")
    if not at or not domain:
        return email
    return f"{local[:3]}**@{domain}"


@dataclass
class MaskReport:
    """What a masking pass did. Diagnostics name identities only by token."""

    substitutions: int = 0
    redactions: int = 0
    diagnostics: List[Diagnostic] = field(default_factory=list)
    _seen_ambiguous: Set[str] = field(default_factory=set, repr=False)

    @property
    def ambiguous(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == AMBIGUOUS_VARIATION]

    def to_dict(self) -> dict:
        return {
            "substitutions": self.substitutions,
            "redactions": self.redactions,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


class Masker:
    """
    Masks text and JSON-like values against one roster index.

    A Masker is cheap; build one per request so its report covers that
    request only.
    """

    def __init__(self, index: Optional[RosterIndex] = None, student_id_pattern: str = DEFAULT_STUDENT_ID_PATTERN):
        self.index = index if index is not None else RosterIndex.empty()
        self.report = MaskReport()
        self._student_id_re = regex.compile(
            r"(?<![\w-])(?:" + student_id_pattern + r")(?![\w-])", regex.IGNORECASE
        )

    def mask(self, value: Any) -> Any:
        """
        Masks a value recursively. Strings (and string keys of mappings)
        are masked; numbers, booleans and None pass through; lists and
        tuples come back as lists.

        Raises:
            UnsupportedValueError: for any other kind of value.
        """
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, str):
            return self.mask_text(value)
        if isinstance(value, (list, tuple)):
            return [self.mask(item) for item in value]
        if isinstance(value, dict):
            # Names show up as keys too (per-student counters and the like).
            return {
                (self.mask_text(key) if isinstance(key, str) else key): self.mask(item)
                for key, item in value.items()
            }
        raise UnsupportedValueError(f"Cannot mask value of type {type(value).__name__}")

    def mask_text(self, text: str) -> str:
        if not text:
            return text
        masked = self._substitute_known(text)
        self._record_ambiguities(masked)
        return self._redact_unknown(masked)

    # ------------------------------------------------------------------
    # Reversible substitution
    # ------------------------------------------------------------------

    def _substitute_known(self, text: str) -> str:
        """
        Replaces roster values with tokens, longest span first.

        Every word-bounded match is collected, overlaps included, so
        "Kim Lee Ann Fitzgerald" offers both "Kim Lee" and "Lee Ann
        Fitzgerald"; the longer span wins and the shorter one is dropped.
        """
        pattern = self.index.mask_pattern
        if pattern is None:
            return text

        spans = []
        for match in pattern.finditer(text, overlapped=True):
            resolution = self.index.resolve(match.group(0))
            if resolution.is_unique:
                spans.append((match.start(), match.end(), resolution.target.token))
        if not spans:
            return text

        chosen = []
        for start, end, token in sorted(spans, key=lambda s: (s[0] - s[1], s[0])):
            if all(end <= taken_start or start >= taken_end for taken_start, taken_end, _ in chosen):
                chosen.append((start, end, token))
        chosen.sort()

        pieces = []
        position = 0
        for start, end, token in chosen:
            pieces.append(text[position:start])
            pieces.append(token)
            position = end
        pieces.append(text[position:])
        self.report.substitutions += len(chosen)
        return "".join(pieces)

    def _record_ambiguities(self, text: str) -> None:
        pattern = self.index.ambiguity_pattern
        if pattern is None:
            return
        for match in pattern.finditer(text):
            key = normalize(match.group(0))
            if key in self.report._seen_ambiguous:
                continue
            self.report._seen_ambiguous.add(key)
            candidates = [t.token for t in self.index.resolve(key).candidates]
            # The variation text goes to the local log only; the report carries tokens.
            logger.warning("Ambiguous variation %r left unmasked; candidates %s", key, candidates)
            self.report.diagnostics.append(Diagnostic(
                kind=AMBIGUOUS_VARIATION,
                message="Name matches more than one roster entry and was left unmasked",
                detail={"candidates": candidates},
            ))

    # ------------------------------------------------------------------
    # One-way fallback
    # ------------------------------------------------------------------

    def _redact_unknown(self, text: str) -> str:
        text = EMAIL_PATTERN.sub(self._redact_email_match, text)
        text = self._student_id_re.sub(self._redact_student_id_match, text)
        text = TITLE_NAME_PATTERN.sub(self._redact_titled_name, text)
        return CAPITALIZED_RUN.sub(self._redact_name_run, text)

    def _redact_email_match(self, match: regex.Match) -> str:
        self.report.redactions += 1
        return redact_email(match.group(0))

    def _redact_student_id_match(self, match: regex.Match) -> str:
        self.report.redactions += 1
        return redact_student_id(match.group(0))

    def _redact_titled_name(self, match: regex.Match) -> str:
        name = match.group(2)
        if self.index.resolve(name).status == AMBIGUOUS:
            return match.group(0)
        self.report.redactions += 1
        # Title and spacing stay as written.
        prefix = match.group(0)[: match.start(2) - match.start(0)]
        return prefix + redact_name(name)

    def _redact_name_run(self, match: regex.Match) -> str:
        """
        Redacts "<given name> <surname>" pairs inside a capitalized run when
        the given name is known from the roster or the nickname table.
        """
        parts = _WORD_SPLIT.split(match.group(0))
        words = parts[0::2]
        given_names = self.index.given_names

        i = 0
        while i < len(words) - 1:
            if words[i].lower() not in given_names:
                i += 1
                continue
            span = f"{words[i]} {words[i + 1]}"
            if self.index.resolve(span).status == AMBIGUOUS:
                i += 2
                continue
            words[i] = redact_name(words[i])
            words[i + 1] = redact_name(words[i + 1])
            self.report.redactions += 1
            i += 2

        parts[0::2] = words
        return "".join(parts)


def mask(value: Any, index: Optional[RosterIndex] = None) -> Any:
    """Masks a value or text. With no index only the one-way fallback applies."""
    return Masker(index).mask(value)


def mask_with_report(value: Any, index: Optional[RosterIndex] = None,
                     student_id_pattern: str = DEFAULT_STUDENT_ID_PATTERN) -> Tuple[Any, MaskReport]:
    masker = Masker(index, student_id_pattern=student_id_pattern)
    return masker.mask(value), masker.report
