"""Core modules for roster tokenization, masking and unmasking."""

from edmcp_pii.core.config import PiiSettings
from edmcp_pii.core.context import PiiContext
from edmcp_pii.core.context_cache import ContextCache, CourseSnapshot
from edmcp_pii.core.file_processor import FileProcessor, ProcessedFile
from edmcp_pii.core.masker import Masker, MaskReport
from edmcp_pii.core.roster_index import RosterIndex
from edmcp_pii.core.roster_store import RosterStore
from edmcp_pii.core.unmasker import Unmasker, UnmaskReport

__all__ = [
    "PiiSettings",
    "PiiContext",
    "ContextCache",
    "CourseSnapshot",
    "FileProcessor",
    "ProcessedFile",
    "Masker",
    "MaskReport",
    "RosterIndex",
    "RosterStore",
    "Unmasker",
    "UnmaskReport",
]
