"""
Roster, group and variation records.

Records are frozen so a cached course snapshot can be shared between
requests without copying.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

DEFAULT_ROLE = "student"


@dataclass(frozen=True)
class RosterEntry:
    """One participant of a course, as last reported by the LMS."""

    owner_id: str
    course_id: int
    anchor_id: int
    display_name: str
    student_id: Optional[str] = None
    email: Optional[str] = None
    role: str = DEFAULT_ROLE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RosterEntry":
        return cls(
            owner_id=row["owner_id"],
            course_id=int(row["course_id"]),
            anchor_id=int(row["anchor_id"]),
            display_name=row["display_name"],
            student_id=row.get("student_id"),
            email=row.get("email"),
            role=row.get("role") or DEFAULT_ROLE,
        )


@dataclass(frozen=True)
class GroupEntry:
    """A course group. Group names are masked wholesale."""

    owner_id: str
    course_id: int
    group_id: int
    name: str
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GroupEntry":
        return cls(
            owner_id=row["owner_id"],
            course_id=int(row["course_id"]),
            group_id=int(row["group_id"]),
            name=row["group_name"],
            description=row.get("description"),
        )


@dataclass(frozen=True)
class Variation:
    """
    One textual way of referring to a person.

    `text` keeps the form as generated or typed; `normalized` is the
    lowercased, whitespace-collapsed key used for matching.
    """

    anchor_id: int
    text: str
    normalized: str
    auto_generated: bool = True
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "anchor_id": self.anchor_id,
            "text": self.text,
            "normalized": self.normalized,
            "auto_generated": self.auto_generated,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class Participant:
    """Participant record as reported by an LMS listing tool."""

    id: int
    name: str
    email: Optional[str] = None
    roles: tuple = ()
    student_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Participant"]:
        """
        Builds a participant from a listing row.

        Accepts `userId` or `id` for the anchor and `username` or
        `studentId` for the student id. Returns None when the anchor id
        or name is missing.
        """
        raw_id = data.get("userId") or data.get("id")
        name = data.get("name")
        try:
            anchor_id = int(raw_id)
        except (TypeError, ValueError):
            return None
        if not anchor_id or not isinstance(name, str) or not name.strip():
            return None

        if data.get("role"):
            roles = (str(data["role"]),)
        else:
            roles = tuple(str(r) for r in (data.get("roles") or ()))

        return cls(
            id=anchor_id,
            name=name.strip(),
            email=data.get("email") or None,
            roles=roles,
            student_id=data.get("username") or data.get("studentId") or None,
        )


@dataclass(frozen=True)
class GroupRecord:
    """Group record as reported by an LMS group listing."""

    id: int
    name: str
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["GroupRecord"]:
        try:
            group_id = int(data.get("id"))
        except (TypeError, ValueError):
            return None
        name = data.get("name")
        if not group_id or not isinstance(name, str) or not name.strip():
            return None
        return cls(id=group_id, name=name.strip(), description=data.get("description") or None)
