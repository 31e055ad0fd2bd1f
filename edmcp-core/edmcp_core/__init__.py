"""
edmcp-core: Shared core utilities for edmcp workflow servers.
"""

from edmcp_core.db import DatabaseManager
from edmcp_core.utils import retry_with_backoff
from edmcp_core.config import load_edmcp_config, get_edmcp_root, get_env, get_env_int

__all__ = [
    "DatabaseManager",
    "retry_with_backoff",
    "load_edmcp_config",
    "get_edmcp_root",
    "get_env",
    "get_env_int",
]
