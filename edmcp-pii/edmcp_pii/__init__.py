"""edmcp-pii: FERPA masking and unmasking of LMS roster data for MCP tool calls."""

from edmcp_pii.core.context import PiiContext
from edmcp_pii.core.context_cache import ContextCache
from edmcp_pii.core.masker import Masker, mask, mask_with_report
from edmcp_pii.core.roster_index import RosterIndex
from edmcp_pii.core.roster_store import RosterStore
from edmcp_pii.core.unmasker import Unmasker, unmask, unmask_with_report

__all__ = [
    "PiiContext",
    "ContextCache",
    "Masker",
    "mask",
    "mask_with_report",
    "RosterIndex",
    "RosterStore",
    "Unmasker",
    "unmask",
    "unmask_with_report",
]
