"""
Reverse lookup from variation strings to roster identities.

An index is built for one (owner, course) from its roster, its groups
and any stored variation overrides. Each normalized string resolves to
exactly one identity, to several (ambiguous, never masked), or to none.
"""

import logging
from dataclasses import dataclass, replace
from functools import cached_property
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import regex

from edmcp_pii.core import tokens
from edmcp_pii.core.models import GroupEntry, RosterEntry, Variation
from edmcp_pii.core.nicknames import NICKNAMES, NicknameTable
from edmcp_pii.core.variations import generate_variations, merge_variations, normalize, parse_name

logger = logging.getLogger("edmcp_pii.core.roster_index")

UNIQUE = "unique"
AMBIGUOUS = "ambiguous"
NO_MATCH = "no_match"

# Claims from user-supplied variations outrank everything generated.
_GENERATED = 0
_CUSTOM = 1


@dataclass(frozen=True)
class IndexTarget:
    kind: str
    anchor_id: int
    field: str

    @property
    def token(self) -> str:
        return tokens.encode(self.kind, self.anchor_id, self.field)


@dataclass(frozen=True)
class Resolution:
    status: str
    target: Optional[IndexTarget] = None
    candidates: Tuple[IndexTarget, ...] = ()

    @property
    def is_unique(self) -> bool:
        return self.status == UNIQUE


_NO_MATCH = Resolution(NO_MATCH)


def variation_pattern(normalized: str) -> str:
    """Regex source for one normalized variation; any whitespace run matches a space."""
    return r"\s+".join(regex.escape(part) for part in normalized.split(" "))


def _alternation(keys: Sequence[str]) -> Optional[regex.Pattern]:
    if not keys:
        return None
    body = "|".join(variation_pattern(k) for k in keys)
    # Hyphens count as word characters so "Smith" never matches inside "Smith-Jones".
    return regex.compile(r"(?<![\w-])(?:" + body + r")(?![\w-])", regex.IGNORECASE)


class RosterIndex:
    """Variation lookup for one course. Immutable once built."""

    def __init__(
        self,
        roster: Iterable[RosterEntry] = (),
        groups: Iterable[GroupEntry] = (),
        overrides: Iterable[Variation] = (),
        nicknames: NicknameTable = NICKNAMES,
    ):
        self._entries: Dict[int, RosterEntry] = {}
        self._groups: Dict[int, GroupEntry] = {}
        self._variations: Dict[int, List[Variation]] = {}
        self._claims: Dict[str, Dict[IndexTarget, int]] = {}
        self._given_names = set(nicknames.known_names())

        overrides_by_anchor: Dict[int, List[Variation]] = {}
        for override in overrides:
            overrides_by_anchor.setdefault(override.anchor_id, []).append(override)

        for entry in roster:
            self._entries[entry.anchor_id] = entry
            parsed = parse_name(entry.display_name)
            if parsed:
                self._given_names.add(parsed.first.lower())

            variations = merge_variations(
                generate_variations(entry.display_name, entry.anchor_id, nicknames),
                overrides_by_anchor.get(entry.anchor_id, ()),
            )
            self._variations[entry.anchor_id] = variations

            name_target = IndexTarget(tokens.PERSON, entry.anchor_id, tokens.NAME)
            for variation in variations:
                if variation.enabled:
                    level = _GENERATED if variation.auto_generated else _CUSTOM
                    self._claim(variation.normalized, name_target, level)
            if entry.email:
                self._claim(normalize(entry.email), IndexTarget(tokens.PERSON, entry.anchor_id, tokens.EMAIL), _GENERATED)
            if entry.student_id:
                self._claim(normalize(entry.student_id), IndexTarget(tokens.PERSON, entry.anchor_id, tokens.CID), _GENERATED)

        for group in groups:
            self._groups[group.group_id] = group
            self._claim(normalize(group.name), IndexTarget(tokens.GROUP, group.group_id, tokens.NAME), _GENERATED)

        self._resolutions: Dict[str, Resolution] = {}
        for key, claims in self._claims.items():
            top = max(claims.values())
            winners = tuple(sorted(
                (target for target, level in claims.items() if level == top),
                key=lambda t: (t.kind, t.anchor_id, t.field),
            ))
            if len(winners) == 1:
                self._resolutions[key] = Resolution(UNIQUE, winners[0], winners)
            else:
                self._resolutions[key] = Resolution(AMBIGUOUS, None, winners)

        ambiguous = len(self.ambiguous_keys)
        if ambiguous:
            logger.warning("Roster index has %d ambiguous variation(s); they will not be masked", ambiguous)

    @classmethod
    def empty(cls) -> "RosterIndex":
        return cls()

    def _claim(self, key: str, target: IndexTarget, level: int) -> None:
        if not key:
            return
        claims = self._claims.setdefault(key, {})
        claims[target] = max(level, claims.get(target, level))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def resolve(self, span: str) -> Resolution:
        """Resolves a text span (any case or spacing)."""
        if not isinstance(span, str):
            return _NO_MATCH
        return self._resolutions.get(normalize(span), _NO_MATCH)

    def entry(self, anchor_id: int) -> Optional[RosterEntry]:
        return self._entries.get(anchor_id)

    def group(self, group_id: int) -> Optional[GroupEntry]:
        return self._groups.get(group_id)

    def value_for(self, token: tokens.Token) -> Optional[str]:
        """The real value a token stands for, or None when it cannot be resolved."""
        if token.kind == tokens.GROUP:
            group = self._groups.get(token.anchor_id)
            return group.name if group and token.field == tokens.NAME else None

        entry = self._entries.get(token.anchor_id)
        if entry is None:
            return None
        if token.field == tokens.NAME:
            return entry.display_name
        if token.field == tokens.EMAIL:
            return entry.email
        if token.field == tokens.CID:
            return entry.student_id
        return None

    def variations_for(self, anchor_id: int) -> List[Variation]:
        """
        Variations of one person with their effective state: a variation
        that lost a collision is reported as disabled.
        """
        target = IndexTarget(tokens.PERSON, anchor_id, tokens.NAME)
        result = []
        for variation in self._variations.get(anchor_id, []):
            resolution = self._resolutions.get(variation.normalized)
            effective = variation.enabled and resolution is not None and resolution.target == target
            result.append(replace(variation, enabled=effective))
        return result

    @property
    def given_names(self) -> frozenset:
        """Lowercase first names from the roster plus every name in the nickname table."""
        return frozenset(self._given_names)

    @property
    def is_empty(self) -> bool:
        return not self._entries and not self._groups

    @cached_property
    def unique_keys(self) -> List[str]:
        """Uniquely resolvable keys, longest first, ties broken alphabetically."""
        keys = [k for k, r in self._resolutions.items() if r.status == UNIQUE]
        return sorted(keys, key=lambda k: (-len(k), k))

    @cached_property
    def ambiguous_keys(self) -> List[str]:
        keys = [k for k, r in self._resolutions.items() if r.status == AMBIGUOUS]
        return sorted(keys, key=lambda k: (-len(k), k))

    def ambiguities(self) -> Dict[str, Tuple[IndexTarget, ...]]:
        """Ambiguous key -> the identities that claim it."""
        return {k: self._resolutions[k].candidates for k in self.ambiguous_keys}

    @cached_property
    def mask_pattern(self) -> Optional[regex.Pattern]:
        """
        One alternation over every unique key, longest first, so a match at
        any start position is the longest key found there. The masker scans
        it with overlapped matches and keeps the longest spans.
        """
        return _alternation(self.unique_keys)

    @cached_property
    def ambiguity_pattern(self) -> Optional[regex.Pattern]:
        return _alternation(self.ambiguous_keys)

    def __len__(self) -> int:
        return len(self._entries)
