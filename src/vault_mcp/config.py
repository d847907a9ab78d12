"""Configuration module for vaultmcp.

Loads configuration from environment variables with sensible defaults.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path

_TRUTHY = ("1", "true", "yes")
_LINK_TYPE_RE = re.compile(r"^[\w-]+$")


def _parse_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_positive(name: str, raw: str, cast=int):
    try:
        value = cast(raw)
        if value <= 0:
            raise ValueError(f"must be positive, got {value}")
    except ValueError as e:
        raise ValueError(f"Invalid {name} value '{raw}': {e}") from e
    return value


def parse_action_keywords(value: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Split an org-style keyword sequence into (open, done) keywords.

    ``TODO,NEXT|DONE,CANCELLED`` puts everything after the bar in the done
    group. Without a bar the last keyword is the only done keyword.
    """
    if "|" in value:
        open_part, _, done_part = value.partition("|")
        open_keywords = _parse_list(open_part)
        done_keywords = _parse_list(done_part)
    else:
        keywords = _parse_list(value)
        open_keywords, done_keywords = keywords[:-1], keywords[-1:]

    if not open_keywords and not done_keywords:
        raise ValueError("VAULT_ACTION_KEYWORDS must name at least one keyword")
    for keyword in open_keywords + done_keywords:
        if not keyword.isupper() or " " in keyword:
            raise ValueError(
                f"Invalid action keyword '{keyword}': keywords must be upper case words"
            )
    return open_keywords, done_keywords


def parse_link_types(value: str, default_type: str) -> tuple[str, ...]:
    """Parse the configured link types; the default type is always included."""
    link_types = _parse_list(value)
    for link_type in link_types + (default_type,):
        if not _LINK_TYPE_RE.match(link_type):
            raise ValueError(
                f"Invalid link type '{link_type}': must be a single word"
            )
    if default_type not in link_types:
        link_types += (default_type,)
    return link_types


@dataclass
class Config:
    """Application configuration."""

    vault_root: Path
    vault_port: int
    vault_cache: Path
    debounce_ms: int = 300
    pending_write_timeout: float = 10.0
    rescan_interval: int = 0
    watch_queue_size: int = 1024
    open_keywords: tuple[str, ...] = ("TODO",)
    done_keywords: tuple[str, ...] = ("DONE", "CANCELLED")
    allowed_tags: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    link_types: tuple[str, ...] = ("link",)
    default_link_type: str = "link"
    refresh_link_titles: bool = True
    auth_token: str | None = None
    read_only: bool = False
    log_dir: Path | None = None
    log_level: str = "INFO"

    @property
    def action_keywords(self) -> tuple[str, ...]:
        return self.open_keywords + self.done_keywords

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    @classmethod
    def from_env(cls, read_only_override: bool | None = None) -> "Config":
        """Load configuration from environment variables.

        Args:
            read_only_override: If provided, overrides the VAULT_READ_ONLY env var.
        """
        default_root = str(Path.home() / "vault")
        vault_root = Path(os.getenv("VAULT_ROOT", default_root)).expanduser()

        port_str = os.getenv("VAULT_PORT", "8080")
        try:
            vault_port = int(port_str)
            if not 1 <= vault_port <= 65535:
                raise ValueError(f"Port must be between 1 and 65535, got {vault_port}")
        except ValueError as e:
            raise ValueError(f"Invalid VAULT_PORT value '{port_str}': {e}") from e

        default_cache = str(vault_root / ".vault" / "snapshot.bin")
        vault_cache = Path(os.getenv("VAULT_CACHE", default_cache)).expanduser()

        debounce_ms = _parse_positive(
            "VAULT_DEBOUNCE_MS", os.getenv("VAULT_DEBOUNCE_MS", "300")
        )
        pending_write_timeout = _parse_positive(
            "VAULT_PENDING_WRITE_TIMEOUT",
            os.getenv("VAULT_PENDING_WRITE_TIMEOUT", "10"),
            cast=float,
        )
        watch_queue_size = _parse_positive(
            "VAULT_WATCH_QUEUE_SIZE", os.getenv("VAULT_WATCH_QUEUE_SIZE", "1024")
        )

        # Zero disables the periodic rescan
        rescan_str = os.getenv("VAULT_RESCAN_INTERVAL", "0")
        try:
            rescan_interval = int(rescan_str)
            if rescan_interval < 0:
                raise ValueError(f"must not be negative, got {rescan_interval}")
        except ValueError as e:
            raise ValueError(f"Invalid VAULT_RESCAN_INTERVAL value '{rescan_str}': {e}") from e

        open_keywords, done_keywords = parse_action_keywords(
            os.getenv("VAULT_ACTION_KEYWORDS", "TODO|DONE,CANCELLED")
        )

        default_link_type = os.getenv("VAULT_DEFAULT_LINK_TYPE", "link").strip()
        link_types = parse_link_types(os.getenv("VAULT_LINK_TYPES", "link"), default_link_type)
        refresh_link_titles = os.getenv("VAULT_REFRESH_LINK_TITLES", "true").lower() in _TRUTHY

        # Auth token - must be at least 32 bytes if set
        auth_token = os.getenv("VAULT_AUTH_TOKEN")
        if auth_token is not None:
            if len(auth_token) < 32:
                raise ValueError(
                    "VAULT_AUTH_TOKEN must be at least 32 characters for security"
                )

        # Read-only mode - CLI flag takes precedence over env var
        if read_only_override is not None:
            read_only = read_only_override
        else:
            read_only = os.getenv("VAULT_READ_ONLY", "").lower() in _TRUTHY

        log_dir_str = os.getenv("VAULT_LOG_DIR")
        log_dir = Path(log_dir_str).expanduser() if log_dir_str else None

        log_level = os.getenv("VAULT_LOG_LEVEL", "INFO").upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid VAULT_LOG_LEVEL value '{log_level}'")

        return cls(
            vault_root=vault_root,
            vault_port=vault_port,
            vault_cache=vault_cache,
            debounce_ms=debounce_ms,
            pending_write_timeout=pending_write_timeout,
            rescan_interval=rescan_interval,
            watch_queue_size=watch_queue_size,
            open_keywords=open_keywords,
            done_keywords=done_keywords,
            allowed_tags=_parse_list(os.getenv("VAULT_TAGS", "")),
            exclude=_parse_list(os.getenv("VAULT_EXCLUDE", "")),
            link_types=link_types,
            default_link_type=default_link_type,
            refresh_link_titles=refresh_link_titles,
            auth_token=auth_token,
            read_only=read_only,
            log_dir=log_dir,
            log_level=log_level,
        )


# Global config instance (lazy loaded)
_config: Config | None = None
_read_only_override: bool | None = None


def set_read_only_override(read_only: bool | None) -> None:
    """Set the read-only override from CLI.

    Args:
        read_only: If True, forces read-only mode. If None, uses env var.
    """
    global _read_only_override
    _read_only_override = read_only


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env(read_only_override=_read_only_override)
    return _config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config, _read_only_override
    _config = None
    _read_only_override = None
