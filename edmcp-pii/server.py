"""
PII MCP Server - FastMCP server for FERPA masking of LMS roster data.

Sits between an LMS tool layer and the model: roster data reported by
the LMS is stored per instructor and course, tool results are masked
into tokens (M12345_name, M12345_email, M12345_CID, G77_name) before the
model sees them, and tokens in model-written arguments and files are
resolved back to real values before they reach the LMS.
"""

import base64
import binascii
import sys
from typing import Any, List, Optional

from fastmcp import FastMCP
from edmcp_core import DatabaseManager, load_edmcp_config

from edmcp_pii.core.config import PiiSettings
from edmcp_pii.core.context import PiiContext
from edmcp_pii.core.context_cache import ContextCache
from edmcp_pii.core.file_processor import MIME_TYPES, detect_file_type
from edmcp_pii.core.roster_store import RosterStore
from edmcp_pii.core.variations import normalize

# Load environment variables from central .env file
load_edmcp_config()

SETTINGS = PiiSettings.from_env()

DB_PATH = SETTINGS.db_path

# Initialize the FastMCP server
mcp = FastMCP("PII Masking Server")

# Lazy initialization of database, store, cache and context
_db_manager: Optional[DatabaseManager] = None
_store: Optional[RosterStore] = None
_cache: Optional[ContextCache] = None
_context: Optional[PiiContext] = None


def get_db_manager() -> DatabaseManager:
    """Get or create the database manager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(DB_PATH)
    return _db_manager


def get_store() -> RosterStore:
    """Get or create the roster store."""
    global _store
    if _store is None:
        _store = RosterStore(
            get_db_manager(),
            student_id_pattern=SETTINGS.student_id_pattern,
            email_domain=SETTINGS.email_domain,
        )
    return _store


def get_cache() -> ContextCache:
    """Get or create the roster snapshot cache."""
    global _cache
    if _cache is None:
        _cache = ContextCache(get_store().load_snapshot, ttl_seconds=SETTINGS.cache_ttl_seconds)
    return _cache


def get_context() -> PiiContext:
    """Get or create the per-user course context."""
    global _context
    if _context is None:
        _context = PiiContext(get_store(), get_cache(), SETTINGS)
    return _context


def _owner(owner_id: Optional[str]) -> str:
    return owner_id or SETTINGS.default_owner


def _decode_base64(content_base64: str) -> bytes:
    try:
        return base64.b64decode(content_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"content_base64 is not valid base64: {e}")


def _encode_base64(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


# ============================================================================
# MCP Tools
# ============================================================================


@mcp.tool
def ping() -> dict:
    """
    Health check endpoint.

    Returns:
        "pong" if the server is running
    """
    return {"status": "success", "message": "pong"}


@mcp.tool
def sync_roster(
    course_id: int,
    participants: List[dict],
    course_name: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Stores the participants of a course and makes it the current course.
    Call this with the output of an LMS participant listing.

    Args:
        course_id: LMS course id
        participants: Participant records with userId (or id), name, and
                      optionally email, role (or roles), username (or studentId)
        course_name: Optional course name to remember for list_courses
        owner_id: Instructor account the roster belongs to

    Returns:
        Dictionary with the number of participants stored
    """
    try:
        owner = _owner(owner_id)
        count = get_context().update_roster(owner, course_id, participants, course_name=course_name)
        print(f"[PII] Synced {count} participants for course {course_id}", file=sys.stderr)
        return {
            "status": "success",
            "course_id": course_id,
            "synced": count,
            "skipped": len(participants) - count,
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def sync_groups(course_id: int, groups: List[dict], owner_id: Optional[str] = None) -> dict:
    """
    Stores the groups of a course so group names are masked as G<id>_name.

    Args:
        course_id: LMS course id
        groups: Group records with id, name and optional description
        owner_id: Instructor account the groups belong to

    Returns:
        Dictionary with the number of groups stored
    """
    try:
        count = get_context().update_groups(_owner(owner_id), course_id, groups)
        print(f"[PII] Synced {count} groups for course {course_id}", file=sys.stderr)
        return {"status": "success", "course_id": course_id, "synced": count}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def clear_roster(course_id: int, confirm: bool = False, owner_id: Optional[str] = None) -> dict:
    """
    Deletes the stored participants and groups of a course.

    Args:
        course_id: LMS course id
        confirm: Must be true; deletion cannot be undone
        owner_id: Instructor account

    Returns:
        Dictionary with the number of participants and groups removed
    """
    if not confirm:
        return {"status": "error", "message": "Deletion requires confirm=true to prevent accidental data loss."}
    try:
        removed, removed_groups = get_context().clear_roster(_owner(owner_id), course_id)
        print(f"[PII] Cleared course {course_id}: {removed} participants, {removed_groups} groups",
              file=sys.stderr)
        return {
            "status": "success",
            "course_id": course_id,
            "participants_removed": removed,
            "groups_removed": removed_groups,
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def list_courses(owner_id: Optional[str] = None) -> dict:
    """
    Lists courses with a stored name, plus the current course context.

    Returns:
        Dictionary with courses and current_course_id
    """
    try:
        owner = _owner(owner_id)
        courses = get_store().get_user_courses(owner)
        return {
            "status": "success",
            "count": len(courses),
            "courses": courses,
            "current_course_id": get_context().get_course_context(owner),
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def set_course_context(course_id: Optional[int] = None, owner_id: Optional[str] = None) -> dict:
    """
    Sets the course whose roster is used when no course_id is given.
    Pass no course_id to clear it.
    """
    try:
        owner = _owner(owner_id)
        context = get_context()
        if course_id is None:
            context.clear_course_context(owner)
        else:
            context.set_course_context(owner, course_id)
        return {"status": "success", "current_course_id": course_id}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def mask_data(data: Any, course_id: Optional[int] = None, owner_id: Optional[str] = None) -> dict:
    """
    Masks text or structured data (strings, numbers, lists, objects).

    Known people become tokens; unknown names, emails and student ids get
    an irreversible partial redaction. Without a course only the
    irreversible redaction applies.

    Args:
        data: Text or JSON value to mask
        course_id: Course whose roster to use (defaults to the current course)
        owner_id: Instructor account

    Returns:
        Dictionary with the masked data and a report of substitutions and diagnostics
    """
    try:
        masked, report = get_context().mask_result(_owner(owner_id), data, course_id)
        return {"status": "success", "data": masked, "report": report.to_dict()}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def unmask_data(data: Any, course_id: Optional[int] = None, owner_id: Optional[str] = None) -> dict:
    """
    Replaces tokens in text or structured data with real roster values.
    Tokens that do not match the roster are left as written.
    """
    try:
        unmasked, report = get_context().unmask_args(_owner(owner_id), data, course_id)
        return {"status": "success", "data": unmasked, "report": report.to_dict()}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def mask_file(
    content_base64: str,
    filename: str,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Masks a csv, tsv, txt, docx, xlsx or pptx file.

    Args:
        content_base64: File content, base64 encoded
        filename: File name; the extension selects the handling
        course_id: Course whose roster to use
        owner_id: Instructor account

    Returns:
        Dictionary with the masked file (base64), its mime type and diagnostics
    """
    try:
        content = _decode_base64(content_base64)
        result = get_context().mask_file(_owner(owner_id), content, filename, course_id)
        return {
            "status": "success",
            "filename": result.filename,
            "mime_type": result.mime_type,
            "content_base64": _encode_base64(result.content),
            "diagnostics": [d.to_dict() for d in result.diagnostics],
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def unmask_file(
    content_base64: str,
    filename: str,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Resolves tokens in a csv, tsv, txt, docx, xlsx or pptx file back to
    real values. Non-text parts of office files are kept byte for byte.
    """
    try:
        content = _decode_base64(content_base64)
        result = get_context().unmask_file(_owner(owner_id), content, filename, course_id)
        return {
            "status": "success",
            "filename": result.filename,
            "mime_type": result.mime_type,
            "content_base64": _encode_base64(result.content),
            "diagnostics": [d.to_dict() for d in result.diagnostics],
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def handle_tool_result(
    tool_name: str,
    result: Any,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Post-processes an LMS tool result before the model sees it.
    Participant listings update the stored roster first; the result is
    then masked.

    Args:
        tool_name: Name of the LMS tool that produced the result
        result: The tool result
        course_id: Course the call was made for
        owner_id: Instructor account

    Returns:
        Dictionary with the masked result
    """
    try:
        masked, report = get_context().handle_tool_result(_owner(owner_id), tool_name, result, course_id)
        return {"status": "success", "result": masked, "report": report.to_dict()}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def prepare_tool_args(tool_name: str, args: dict, owner_id: Optional[str] = None) -> dict:
    """
    Pre-processes model-written arguments before an LMS tool runs.
    A course_id argument becomes the current course; arguments of write
    tools (posts, messages, assignments, editor content) are unmasked.

    Returns:
        Dictionary with the arguments to pass on and whether they were unmasked
    """
    try:
        prepared, report = get_context().prepare_tool_args(_owner(owner_id), tool_name, args)
        return {
            "status": "success",
            "args": prepared,
            "unmasked": report is not None,
            "report": report.to_dict() if report is not None else None,
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def list_variations(anchor_id: int, course_id: Optional[int] = None, owner_id: Optional[str] = None) -> dict:
    """
    Lists the name forms recognized for one person. Operator tool: the
    result contains real names.

    Args:
        anchor_id: LMS user id of the person
        course_id: Course (defaults to the current course)
        owner_id: Instructor account

    Returns:
        Dictionary with variations (text, auto_generated, enabled)
    """
    try:
        owner = _owner(owner_id)
        context = get_context()
        course = context.require_course(owner, course_id)
        index = context.get_index(owner, course)
        if index.entry(anchor_id) is None:
            return {"status": "error", "message": f"Person {anchor_id} is not on the roster of course {course}"}
        variations = [v.to_dict() for v in index.variations_for(anchor_id)]
        return {"status": "success", "anchor_id": anchor_id, "count": len(variations), "variations": variations}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def add_custom_variation(
    anchor_id: int,
    text: str,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Adds a custom name form for a person (a nickname the roster does not
    know, a maiden name, ...). Custom forms win over generated ones.
    """
    try:
        owner = _owner(owner_id)
        context = get_context()
        course = context.require_course(owner, course_id)
        if get_store().find_by_anchor_id(owner, course, anchor_id) is None:
            return {"status": "error", "message": f"Person {anchor_id} is not on the roster of course {course}"}
        variation = context.save_variation(owner, course, anchor_id, text)
        return {"status": "success", "variation": variation.to_dict()}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def remove_custom_variation(
    anchor_id: int,
    text: str,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """Removes a custom name form, or resets a switched generated one."""
    try:
        owner = _owner(owner_id)
        context = get_context()
        course = context.require_course(owner, course_id)
        removed = context.delete_variation(owner, course, anchor_id, text)
        if not removed:
            return {"status": "error", "message": "No stored variation with that text"}
        return {"status": "success", "removed": True}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def set_variation_enabled(
    anchor_id: int,
    text: str,
    enabled: bool,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Switches one generated name form on or off for a person, e.g. to stop
    a nickname that is also a common word from being masked.
    """
    try:
        owner = _owner(owner_id)
        context = get_context()
        course = context.require_course(owner, course_id)
        index = context.get_index(owner, course)
        key = normalize(text)
        generated = [v for v in index.variations_for(anchor_id) if v.auto_generated and v.normalized == key]
        if not generated:
            return {"status": "error", "message": "No generated variation with that text for this person"}
        variation = context.save_variation(owner, course, anchor_id, generated[0].text,
                                           auto_generated=True, enabled=enabled)
        return {"status": "success", "variation": variation.to_dict()}
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def get_ambiguities(course_id: Optional[int] = None, owner_id: Optional[str] = None) -> dict:
    """
    Reports name forms shared by several people in a course. They are
    never masked; the candidates are given as tokens and the forms
    themselves are written to the server log for review.
    """
    try:
        owner = _owner(owner_id)
        context = get_context()
        course = context.require_course(owner, course_id)
        ambiguities = context.get_index(owner, course).ambiguities()
        for key, candidates in ambiguities.items():
            print(f"[PII] Ambiguous variation {key!r}: {[c.token for c in candidates]}", file=sys.stderr)
        return {
            "status": "success",
            "count": len(ambiguities),
            "ambiguities": [{"candidates": [c.token for c in candidates]} for candidates in ambiguities.values()],
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def upload_masked_file(
    content_base64: str,
    filename: str,
    course_id: Optional[int] = None,
    owner_id: Optional[str] = None,
) -> dict:
    """
    Stores a masked file written by the model so the instructor can
    download it unmasked. Files expire after EDMCP_PII_FILE_TTL_SECONDS.

    Returns:
        Dictionary with file_id to pass to download_unmasked_file
    """
    try:
        owner = _owner(owner_id)
        course = get_context().require_course(owner, course_id)
        content = _decode_base64(content_base64)
        if len(content) > SETTINGS.max_file_bytes:
            return {
                "status": "error",
                "message": f"File exceeds the {SETTINGS.max_file_bytes} byte limit",
            }
        store = get_store()
        purged = store.purge_expired_files()
        if purged:
            print(f"[PII] Purged {purged} expired files", file=sys.stderr)
        mime_type = MIME_TYPES[detect_file_type(filename)]
        file_id = store.store_pending_file(owner, course, filename, mime_type, content,
                                           ttl_seconds=SETTINGS.file_ttl_seconds)
        return {
            "status": "success",
            "file_id": file_id,
            "filename": filename,
            "mime_type": mime_type,
            "expires_in_seconds": SETTINGS.file_ttl_seconds,
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


@mcp.tool
def download_unmasked_file(file_id: str) -> dict:
    """
    Returns a stored file with tokens resolved to real values.

    Returns:
        Dictionary with filename, mime type and base64 content
    """
    try:
        store = get_store()
        record = store.get_pending_file(file_id)
        if record is None:
            return {"status": "error", "message": f"File not found or expired: {file_id}"}
        result = get_context().unmask_file(record["owner_id"], record["content"], record["filename"],
                                           int(record["course_id"]))
        store.mark_file_downloaded(file_id)
        return {
            "status": "success",
            "filename": result.filename,
            "mime_type": result.mime_type,
            "content_base64": _encode_base64(result.content),
            "diagnostics": [d.to_dict() for d in result.diagnostics],
        }
    except Exception as e:
        return {"status": "error", "message": str(e)}


if __name__ == "__main__":
    mcp.run()
