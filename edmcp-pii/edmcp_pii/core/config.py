"""Settings for the PII workflow, read from the central edmcp .env."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from edmcp_core import get_env, get_env_int

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "edmcp.db"
DEFAULT_STUDENT_ID_PATTERN = r"C\d{7,8}"


@dataclass(frozen=True)
class PiiSettings:
    db_path: Path = DEFAULT_DB_PATH
    cache_ttl_seconds: int = 300
    default_owner: str = "default"
    student_id_pattern: str = DEFAULT_STUDENT_ID_PATTERN
    email_domain: Optional[str] = None
    file_ttl_seconds: int = 3600
    max_file_bytes: int = 10 * 1024 * 1024

    @classmethod
    def from_env(cls) -> "PiiSettings":
        """Reads EDMCP_PII_* variables; anything unset keeps its default."""
        db_path = get_env("EDMCP_PII_DB_PATH")
        return cls(
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
            cache_ttl_seconds=get_env_int("EDMCP_PII_CACHE_TTL_SECONDS", 300),
            default_owner=get_env("EDMCP_PII_DEFAULT_OWNER", "default"),
            student_id_pattern=get_env("EDMCP_PII_STUDENT_ID_PATTERN", DEFAULT_STUDENT_ID_PATTERN),
            email_domain=get_env("EDMCP_PII_EMAIL_DOMAIN"),
            file_ttl_seconds=get_env_int("EDMCP_PII_FILE_TTL_SECONDS", 3600),
            max_file_bytes=get_env_int("EDMCP_PII_MAX_FILE_BYTES", 10 * 1024 * 1024),
        )
