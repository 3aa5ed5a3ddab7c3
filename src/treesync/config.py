"""Configuration management for treesync."""

from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STATE_DIR_NAME = ".treesync"
STATUS_FILE_NAME = "status.json"
LOG_FILE_NAME = "treesync.log"


def default_state_dir() -> Path:
    return Path.home() / STATE_DIR_NAME


class SyncConfig(BaseSettings):
    """Paths and options for one live tree kept in sync with a candidate tree."""

    candidate_root: Path = Field(description="Freshly fetched tree to sync from")
    live_root: Path = Field(description="Currently active tree being kept up to date")
    backup_root: Path = Field(
        default_factory=lambda: default_state_dir() / "backup",
        description="Isolated directory holding the current backup snapshot",
    )
    status_path: Path = Field(
        default_factory=lambda: default_state_dir() / STATUS_FILE_NAME,
        description="File holding the current status record",
    )
    log_file: Optional[Path] = Field(
        default_factory=lambda: default_state_dir() / LOG_FILE_NAME,
        description="Append-only event log, None to log to the console only",
    )
    log_level: str = "INFO"

    include_patterns: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Glob patterns selecting files the validation check runs on",
    )
    ignore_patterns: List[str] = Field(
        default_factory=list,
        description="Patterns excluded from sync in addition to the defaults",
    )

    model_config = SettingsConfigDict(
        env_prefix="TREESYNC_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @field_validator("candidate_root", "live_root", "backup_root", "status_path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand ~ and make the path absolute."""
        return v.expanduser().absolute()

    @field_validator("log_file")
    @classmethod
    def expand_log_file(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser().absolute() if v is not None else None

    @field_validator("log_level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def check_roots_are_distinct(self) -> "SyncConfig":
        """Backup, status and log locations must stay out of the trees being synced."""
        if _overlaps(self.candidate_root, self.live_root):
            raise ValueError("candidate_root and live_root must not overlap")
        for name, root in (("live_root", self.live_root), ("candidate_root", self.candidate_root)):
            if _overlaps(self.backup_root, root):
                raise ValueError(f"backup_root must not overlap {name}")
            # a status or log file inside a synced tree would show up as a change
            for sink_name, sink in (("status_path", self.status_path), ("log_file", self.log_file)):
                if sink is not None and (sink == root or root in sink.parents):
                    raise ValueError(f"{sink_name} must not be inside {name}")
        return self


def _overlaps(a: Path, b: Path) -> bool:
    return a == b or a in b.parents or b in a.parents
