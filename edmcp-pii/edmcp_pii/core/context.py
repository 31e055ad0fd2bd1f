"""
Per-user course context and the mask/unmask entry points used around
LMS tool calls.

Flow:
1. A listing tool (list_participants, ...) returns participants ->
   `update_roster()` stores them and makes that course the user's context.
2. Before a tool result goes to the model -> `mask_result()`.
3. Before model-written arguments reach a write tool -> `unmask_args()`.
"""

import json
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from edmcp_pii.core.config import PiiSettings
from edmcp_pii.core.context_cache import ContextCache
from edmcp_pii.core.errors import NO_COURSE_CONTEXT, Diagnostic, NoCourseContext, UnsupportedValueError
from edmcp_pii.core.file_processor import MIME_TYPES, FileProcessor, ProcessedFile, detect_file_type
from edmcp_pii.core.masker import Masker, MaskReport
from edmcp_pii.core.models import Participant
from edmcp_pii.core.roster_index import RosterIndex
from edmcp_pii.core.roster_store import RosterStore
from edmcp_pii.core.unmasker import Unmasker, UnmaskReport

logger = logging.getLogger("edmcp_pii.core.context")

ROSTER_TOOLS = frozenset({
    "list_participants",
    "get_enrolled_users",
    "analyze_forum",
    "analyze_feedback",
})

UNMASK_ARG_TOOLS = frozenset({
    "create_forum_post",
    "type_text",
    "set_editor_content",
    "create_assignment",
    "edit_assignment",
    "send_message",
    "bulk_send_message",
})

# Tools whose result carries a `participants` list we can read.
_PARTICIPANT_LISTING_TOOLS = frozenset({"list_participants", "get_enrolled_users"})


def should_update_roster(tool_name: str) -> bool:
    """True for tools whose results carry participant data."""
    return tool_name in ROSTER_TOOLS


def should_unmask_args(tool_name: str) -> bool:
    """True for tools whose arguments may carry tokens written by the model."""
    return tool_name in UNMASK_ARG_TOOLS


def extract_course_id(args: Any) -> Optional[int]:
    if not isinstance(args, dict):
        return None
    course_id = args.get("course_id")
    # bool is an int subclass; True is not a course.
    if isinstance(course_id, int) and not isinstance(course_id, bool):
        return course_id
    return None


def extract_participants_from_result(tool_name: str, result: Any) -> Optional[List[Participant]]:
    """
    Reads participant records from a listing tool's result.

    Returns None when the tool does not list participants or the result
    has no participants list. Rows without an id or name are dropped.
    """
    if tool_name not in _PARTICIPANT_LISTING_TOOLS or not isinstance(result, dict):
        return None
    rows = result.get("participants")
    if not isinstance(rows, list):
        return None
    participants = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        participant = Participant.from_dict(row)
        if participant is not None:
            participants.append(participant)
    return participants


def _plain(value: Any) -> Any:
    """Reduces a value to plain JSON kinds so it can be masked."""
    return json.loads(json.dumps(value, default=str))


class PiiContext:
    """
    Tracks which course each user is working in and applies the right
    roster to mask and unmask calls.
    """

    def __init__(self, store: RosterStore, cache: ContextCache, settings: Optional[PiiSettings] = None):
        self.store = store
        self.cache = cache
        self.settings = settings or PiiSettings()
        self._course_context: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Course context
    # ------------------------------------------------------------------

    def set_course_context(self, user_id: str, course_id: int) -> None:
        with self._lock:
            self._course_context[user_id] = course_id

    def get_course_context(self, user_id: str) -> Optional[int]:
        with self._lock:
            return self._course_context.get(user_id)

    def clear_course_context(self, user_id: str) -> None:
        with self._lock:
            self._course_context.pop(user_id, None)

    def resolve_course(self, user_id: str, course_id: Optional[int] = None) -> Optional[int]:
        """An explicit course wins over the user's current context."""
        if course_id is not None:
            return course_id
        return self.get_course_context(user_id)

    def require_course(self, user_id: str, course_id: Optional[int] = None) -> int:
        """Like resolve_course, for operations that make no sense without a course."""
        course = self.resolve_course(user_id, course_id)
        if course is None:
            raise NoCourseContext("No course_id given and no current course context")
        return course

    def get_index(self, user_id: str, course_id: int) -> RosterIndex:
        return self.cache.get_index(user_id, course_id)

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def update_roster(self, user_id: str, course_id: int, participants: Iterable[Any],
                      course_name: Optional[str] = None) -> int:
        """Stores participants, refreshes the cached index and switches the user to the course."""
        with self.cache.writer(user_id, course_id):
            count = self.store.sync_roster(user_id, course_id, participants)
            if course_name:
                self.store.upsert_course_name(user_id, course_id, course_name)
            self.cache.invalidate(user_id, course_id)
        self.set_course_context(user_id, course_id)
        logger.info("Synced %d participants for course %s", count, course_id)
        return count

    def update_groups(self, user_id: str, course_id: int, groups: Iterable[Any]) -> int:
        with self.cache.writer(user_id, course_id):
            count = self.store.sync_groups(user_id, course_id, groups)
            self.cache.invalidate(user_id, course_id)
        logger.info("Synced %d groups for course %s", count, course_id)
        return count

    def clear_roster(self, user_id: str, course_id: int) -> Tuple[int, int]:
        """Deletes a course's participants and groups. Returns (participants, groups) removed."""
        with self.cache.writer(user_id, course_id):
            removed = self.store.clear_roster(user_id, course_id)
            removed_groups = self.store.clear_groups(user_id, course_id)
            self.cache.invalidate(user_id, course_id)
        return removed, removed_groups

    def save_variation(self, user_id: str, course_id: int, anchor_id: int, text: str,
                       auto_generated: bool = False, enabled: bool = True):
        with self.cache.writer(user_id, course_id):
            variation = self.store.save_variation(user_id, course_id, anchor_id, text,
                                                  auto_generated=auto_generated, enabled=enabled)
            self.cache.invalidate(user_id, course_id)
        return variation

    def delete_variation(self, user_id: str, course_id: int, anchor_id: int, text: str) -> bool:
        with self.cache.writer(user_id, course_id):
            deleted = self.store.delete_variation(user_id, course_id, anchor_id, text)
            self.cache.invalidate(user_id, course_id)
        return deleted

    # ------------------------------------------------------------------
    # Egress / ingress
    # ------------------------------------------------------------------

    def _no_context(self, message: str) -> Diagnostic:
        return Diagnostic(kind=NO_COURSE_CONTEXT, message=message, detail={})

    def mask_result(self, user_id: str, result: Any,
                    course_id: Optional[int] = None) -> Tuple[Any, MaskReport]:
        """
        Masks a tool result before it reaches the model.

        Without a course only the one-way fallback applies. A value
        outside the JSON kinds is reduced to JSON first rather than
        passed through unmasked.
        """
        course = self.resolve_course(user_id, course_id)
        index = self.get_index(user_id, course) if course is not None else None
        masker = Masker(index, student_id_pattern=self.settings.student_id_pattern)

        if course is None:
            logger.info("mask_result: no course context, applying one-way masking only")
            masker.report.diagnostics.append(
                self._no_context("No course context; only one-way masking was applied")
            )

        try:
            masked = masker.mask(result)
        except UnsupportedValueError:
            masked = masker.mask(_plain(result))
        return masked, masker.report

    def unmask_args(self, user_id: str, args: Any,
                    course_id: Optional[int] = None) -> Tuple[Any, UnmaskReport]:
        """Unmasks tool arguments; without a course they pass through unchanged."""
        course = self.resolve_course(user_id, course_id)
        if course is None:
            report = UnmaskReport()
            report.diagnostics.append(self._no_context("No course context; arguments left unchanged"))
            return args, report

        unmasker = Unmasker(self.get_index(user_id, course))
        try:
            unmasked = unmasker.unmask(args)
        except UnsupportedValueError:
            unmasked = unmasker.unmask(_plain(args))
        return unmasked, unmasker.report

    def mask_file(self, user_id: str, content: bytes, filename: str,
                  course_id: Optional[int] = None) -> ProcessedFile:
        course = self.resolve_course(user_id, course_id)
        index = self.get_index(user_id, course) if course is not None else None
        result = FileProcessor(index, self.settings.student_id_pattern).mask_file(content, filename)
        if course is None:
            result.diagnostics.append(self._no_context("No course context; only one-way masking was applied"))
        return result

    def unmask_file(self, user_id: str, content: bytes, filename: str,
                    course_id: Optional[int] = None) -> ProcessedFile:
        course = self.resolve_course(user_id, course_id)
        if course is None:
            file_type = detect_file_type(filename)
            result = ProcessedFile(content=content, filename=filename,
                                   mime_type=MIME_TYPES[file_type], file_type=file_type)
            result.diagnostics.append(self._no_context("No course context; file left unchanged"))
            return result
        return FileProcessor(self.get_index(user_id, course),
                             self.settings.student_id_pattern).unmask_file(content, filename)

    # ------------------------------------------------------------------
    # Tool hooks
    # ------------------------------------------------------------------

    def handle_tool_result(self, user_id: str, tool_name: str, result: Any,
                           course_id: Optional[int] = None) -> Tuple[Any, MaskReport]:
        """Syncs the roster from listing tools, then masks the result."""
        if should_update_roster(tool_name):
            course = self.resolve_course(user_id, course_id)
            participants = extract_participants_from_result(tool_name, result)
            if participants and course is not None:
                self.update_roster(user_id, course, participants)
        return self.mask_result(user_id, result, course_id)

    def prepare_tool_args(self, user_id: str, tool_name: str, args: Any) -> Tuple[Any, Optional[UnmaskReport]]:
        """
        Records the course named in the arguments as the user's context and
        unmasks the arguments of write tools. Other tools' arguments are
        returned unchanged with no report.
        """
        course = extract_course_id(args)
        if course is not None:
            self.set_course_context(user_id, course)
        if not should_unmask_args(tool_name):
            return args, None
        return self.unmask_args(user_id, args, course)
