"""
Name variation generator.

Produces every textual form a person is likely to be called by in course
content, so that masking a roster name also masks "Nery, Matheus",
"M. Nery" or "Matt Nery". Every generated form contains the last name;
a bare first name or nickname is never produced, since on its own it
would mask ordinary words.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

import regex

from edmcp_pii.core.config import DEFAULT_STUDENT_ID_PATTERN
from edmcp_pii.core.models import Variation
from edmcp_pii.core.nicknames import NICKNAMES, NicknameTable

NAME_SUFFIXES = {"jr", "jr.", "sr", "sr.", "ii", "iii", "iv"}

# LMS display names sometimes end with the student id: "Jackson Smith C00123456".
_TRAILING_STUDENT_ID = regex.compile(
    r"(?:^|[\s,]+)[(\[]?(?:" + DEFAULT_STUDENT_ID_PATTERN + r")[)\]]?$", regex.IGNORECASE
)


@dataclass(frozen=True)
class ParsedName:
    first: str
    last: str
    middle: Optional[str] = None
    suffix: Optional[str] = None

    @property
    def first_initial(self) -> str:
        return self.first[0].upper()

    @property
    def middle_initial(self) -> Optional[str]:
        return self.middle[0].upper() if self.middle else None


def normalize(text: str) -> str:
    """Lowercases and collapses whitespace; the matching key for variations."""
    return " ".join(text.lower().split())


def _is_suffix(token: str) -> bool:
    return token.lower().strip(",") in NAME_SUFFIXES


def parse_name(full_name: str) -> Optional[ParsedName]:
    """
    Splits a display name into first, middle, last and suffix.

    "First Middle Last" splits on whitespace (first and last token, the
    rest is the middle name). With a comma, "Last, First Middle" is
    assumed. A trailing Jr./Sr./II/III/IV is kept apart as the suffix.
    A trailing student id is dropped.
    Returns None for names with fewer than two parts.
    """
    cleaned = " ".join((full_name or "").split())
    cleaned = _TRAILING_STUDENT_ID.sub("", cleaned)
    if not cleaned:
        return None

    suffix = None
    if "," in cleaned:
        head, _, tail = cleaned.partition(",")
        tail_tokens = tail.replace(",", " ").split()
        head_tokens = head.split()

        if tail_tokens and all(_is_suffix(t) for t in tail_tokens):
            # "John Smith, Jr." is a plain name with a suffix
            suffix = tail_tokens[-1]
            tokens = head_tokens
        else:
            if tail_tokens and _is_suffix(tail_tokens[-1]):
                suffix = tail_tokens.pop()
            if len(head_tokens) > 1 and _is_suffix(head_tokens[-1]):
                suffix = head_tokens.pop()
            if not head_tokens or not tail_tokens:
                return None
            return ParsedName(
                first=tail_tokens[0],
                last=" ".join(head_tokens),
                middle=" ".join(tail_tokens[1:]) or None,
                suffix=suffix,
            )
    else:
        tokens = cleaned.split()
        if len(tokens) > 2 and _is_suffix(tokens[-1]):
            suffix = tokens.pop()

    if len(tokens) < 2:
        return None
    return ParsedName(
        first=tokens[0],
        last=tokens[-1],
        middle=" ".join(tokens[1:-1]) or None,
        suffix=suffix,
    )


def _given_name_forms(given: str, name: ParsedName) -> List[str]:
    last = name.last
    forms = [
        f"{given} {last}",
        f"{last}, {given}",
        f"{last} {given}",
    ]
    if name.middle:
        initial = name.middle_initial
        forms += [
            f"{given} {name.middle} {last}",
            f"{last}, {given} {name.middle}",
            f"{given} {initial}. {last}",
            f"{given} {initial} {last}",
            f"{last}, {given} {initial}.",
            f"{last}, {given} {initial}",
        ]
    if name.suffix:
        forms += [
            f"{given} {last} {name.suffix}",
            f"{given} {last}, {name.suffix}",
        ]
    return forms


def _initial_forms(name: ParsedName) -> List[str]:
    initial, last = name.first_initial, name.last
    return [
        f"{initial}. {last}",
        f"{initial} {last}",
        f"{last}, {initial}.",
        f"{last}, {initial}",
    ]


def generate_variations(
    display_name: str,
    anchor_id: int,
    nicknames: NicknameTable = NICKNAMES,
) -> List[Variation]:
    """
    Returns the auto-generated variations of one person's name.

    The result is deterministic: the name as given, then order
    permutations, middle-initial forms, nickname forms and first-initial
    forms, deduplicated on the normalized key in that order.
    """
    forms = [display_name]
    parsed = parse_name(display_name)
    if parsed:
        forms += _given_name_forms(parsed.first, parsed)
        for nickname in sorted(nicknames.equivalents(parsed.first)):
            forms += _given_name_forms(nickname.capitalize(), parsed)
        forms += _initial_forms(parsed)

    variations: Dict[str, Variation] = {}
    for form in forms:
        key = normalize(form)
        if key and key not in variations:
            variations[key] = Variation(
                anchor_id=anchor_id,
                text=" ".join(form.split()),
                normalized=key,
                auto_generated=True,
                enabled=True,
            )
    return list(variations.values())


def custom_variation(anchor_id: int, text: str, enabled: bool = True) -> Variation:
    """A user-supplied variation. It bypasses the last-name requirement."""
    return Variation(
        anchor_id=anchor_id,
        text=" ".join(text.split()),
        normalized=normalize(text),
        auto_generated=False,
        enabled=enabled,
    )


def merge_variations(
    generated: Iterable[Variation],
    overrides: Iterable[Variation],
) -> List[Variation]:
    """
    Applies stored overrides to a generated list.

    An override with auto_generated=True only toggles `enabled` on the
    matching generated form (and is dropped if the form no longer
    exists). A custom override replaces any generated form with the same
    key and is otherwise appended.
    """
    merged: Dict[str, Variation] = {v.normalized: v for v in generated}
    for override in overrides:
        existing = merged.get(override.normalized)
        if override.auto_generated:
            if existing is not None and existing.auto_generated:
                merged[override.normalized] = replace(existing, enabled=override.enabled)
            continue
        merged[override.normalized] = override
    return list(merged.values())
