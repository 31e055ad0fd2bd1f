"""
Token grammar for masked identifiers.

Current grammar (the only one emitted):
    M<anchor>_name, M<anchor>_email, M<anchor>_CID   person fields
    G<anchor>_name                                   group names

Accepted on unmask only:
    M<anchor>:name|email|CID    legacy colon separator
    M<anchor>                   bare, some models drop the suffix; always a name

Anchor ids are the LMS-issued decimal ids.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import regex

PERSON = "M"
GROUP = "G"

NAME = "name"
EMAIL = "email"
CID = "CID"

PERSON_FIELDS = (NAME, EMAIL, CID)
GROUP_FIELDS = (NAME,)

# A token never starts or ends inside a longer alphanumeric run.
_EDGE_BEFORE = r"(?<![A-Za-z0-9])"
_EDGE_AFTER = r"(?![A-Za-z0-9])"

_CURRENT = regex.compile(r"([MG])(\d+)_(name|email|CID)")
_LEGACY = regex.compile(r"M(\d+):(name|email|CID)")
_BARE = regex.compile(r"M(\d{3,})")

# Single pass over text for every accepted grammar. Suffixed forms come first so
# "M123_name" is never read as the bare "M123".
TOKEN_SCAN_PATTERN = regex.compile(
    _EDGE_BEFORE
    + r"(?:[MG]\d+_(?:name|email|CID)|M\d+:(?:name|email|CID)|M\d{3,}(?![_:]))"
    + _EDGE_AFTER
)


@dataclass(frozen=True)
class Token:
    kind: str
    anchor_id: int
    field: str

    def encode(self) -> str:
        return encode(self.kind, self.anchor_id, self.field)


def encode(kind: str, anchor_id: int, field: str = NAME) -> str:
    """
    Builds a token in the current grammar.

    Raises:
        ValueError: for an unknown kind, a field the kind does not carry,
                    or a negative anchor id.
    """
    if kind == PERSON:
        allowed = PERSON_FIELDS
    elif kind == GROUP:
        allowed = GROUP_FIELDS
    else:
        raise ValueError(f"Unknown token kind: {kind!r}")
    if field not in allowed:
        raise ValueError(f"Field {field!r} is not valid for kind {kind!r}")
    if int(anchor_id) < 0:
        raise ValueError("Anchor id must be non-negative")
    return f"{kind}{int(anchor_id)}_{field}"


def decode(value) -> Optional[Token]:
    """
    Parses a complete token string in any accepted grammar.

    Returns None for anything that is not exactly one token, including
    non-string input. Never raises.
    """
    if not isinstance(value, str):
        return None

    match = _CURRENT.fullmatch(value)
    if match:
        kind, digits, field = match.groups()
        if kind == GROUP and field not in GROUP_FIELDS:
            return None
        return Token(kind, int(digits), field)

    match = _LEGACY.fullmatch(value)
    if match:
        return Token(PERSON, int(match.group(1)), match.group(2))

    match = _BARE.fullmatch(value)
    if match:
        return Token(PERSON, int(match.group(1)), NAME)

    return None


def find_tokens(text: str) -> Iterator[Tuple[regex.Match, Token]]:
    """Yields (match, token) for every decodable token in the text."""
    if not isinstance(text, str) or not text:
        return
    for match in TOKEN_SCAN_PATTERN.finditer(text):
        token = decode(match.group(0))
        if token is not None:
            yield match, token


def contains_tokens(text: str) -> bool:
    """True when the text holds at least one token in any accepted grammar."""
    return next(find_tokens(text), None) is not None


def extract_anchor_ids(text: str, kind: str = PERSON) -> List[int]:
    """Anchor ids referenced by tokens of one kind, deduplicated in first-seen order."""
    seen: List[int] = []
    for _, token in find_tokens(text):
        if token.kind == kind and token.anchor_id not in seen:
            seen.append(token.anchor_id)
    return seen
