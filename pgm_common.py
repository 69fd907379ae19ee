"""Shared layout constants, errors, settings and artifact file helpers for pgm."""

from __future__ import annotations

import dataclasses
import hashlib
from pathlib import Path

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc


DEFAULT_ROOT = "postgres"
DEFAULT_CONFIG_FILE = "pgm.yaml"

MIGRATIONS_DIR = "migrations"
FUNCTIONS_DIR = "functions"
TRIGGERS_DIR = "triggers"
VIEWS_DIR = "views"
SEEDS_DIR = "seeds"

BOOTSTRAP_MIGRATION = "00000.sql"
SEQUENCE_WIDTH = 5

# category -> (folder, tracking table)
CATEGORIES: dict[str, tuple[str, str]] = {
    "function": (FUNCTIONS_DIR, "pgm_function"),
    "trigger": (TRIGGERS_DIR, "pgm_trigger"),
    "view": (VIEWS_DIR, "pgm_view"),
}
MIGRATION_TABLE = "pgm_migration"

DEFAULT_NOISE_LINES = [
    "SELECT pg_catalog.set_config('search_path', '', false);",
    "SET client_min_messages = warning;",
]


class PgmError(Exception):
    """Base class for every error pgm reports to the operator."""


class PgmFilesystemError(PgmError):
    pass


class PgmConfigError(PgmError):
    pass


class PgmScaffoldError(PgmError):
    pass


class DumpParseError(PgmError):
    def __init__(self, message: str, line: int):
        super().__init__(f"line {line}: {message}")
        self.line = line


class PgmExecutionError(PgmError):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


@dataclasses.dataclass
class ToolCommand:
    command: str
    args: list[str]


@dataclasses.dataclass
class Settings:
    path: str = DEFAULT_ROOT
    psql: ToolCommand = dataclasses.field(default_factory=lambda: ToolCommand("psql", []))
    pg_dump: ToolCommand = dataclasses.field(
        default_factory=lambda: ToolCommand("pg_dump", ["--no-owner", "--schema-only"])
    )
    noise_lines: list[str] = dataclasses.field(default_factory=lambda: list(DEFAULT_NOISE_LINES))


def _tool_command(raw: object, default: ToolCommand, key: str) -> ToolCommand:
    if raw is None:
        return default
    if not isinstance(raw, dict):
        raise PgmConfigError(f"'{key}' must be a mapping")
    args = raw.get("args", default.args)
    if not isinstance(args, list):
        raise PgmConfigError(f"'{key}.args' must be a list")
    return ToolCommand(command=str(raw.get("command", default.command)), args=[str(a) for a in args])


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from a YAML file.

    Without an explicit path, ``pgm.yaml`` in the working directory is used when it
    exists; otherwise built-in defaults apply. An explicit path must exist.
    """
    settings = Settings()
    if config_path is None:
        config_path = Path(DEFAULT_CONFIG_FILE)
        if not config_path.exists():
            return settings
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PgmConfigError(f"Failed to read config file '{config_path}'") from exc
    except yaml.YAMLError as exc:
        raise PgmConfigError(f"Invalid YAML in config file '{config_path}'") from exc

    if raw is None:
        return settings
    if not isinstance(raw, dict):
        raise PgmConfigError(f"Config file '{config_path}' must contain a mapping")

    settings.path = str(raw.get("path", settings.path))
    settings.psql = _tool_command(raw.get("psql"), settings.psql, "psql")
    settings.pg_dump = _tool_command(raw.get("pg_dump"), settings.pg_dump, "pg_dump")
    dump_cfg = raw.get("dump") or {}
    if not isinstance(dump_cfg, dict):
        raise PgmConfigError("'dump' must be a mapping")
    noise = dump_cfg.get("noise_lines")
    if noise is not None:
        if not isinstance(noise, list):
            raise PgmConfigError("'dump.noise_lines' must be a list")
        settings.noise_lines = [str(line) for line in noise]
    return settings


def content_hash(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@dataclasses.dataclass
class SqlFile:
    path: Path
    name: str
    body: str
    hash: str


def artifact_name(path: Path) -> str:
    name = path.stem
    if not name.strip(".") or "'" in name:
        raise PgmFilesystemError(f"Unusable file name: {path}")
    return name


def read_sql_file(path: Path) -> SqlFile:
    name = artifact_name(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise PgmFilesystemError(f"Failed to read {path}") from exc
    try:
        body = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PgmFilesystemError(f"{path} is not valid UTF-8") from exc
    return SqlFile(path=path, name=name, body=body, hash=content_hash(data))


def list_sql_files(directory: Path) -> list[Path]:
    """Return the ``*.sql`` files of a folder sorted by file name; a missing folder is empty."""
    if not directory.is_dir():
        return []
    try:
        entries = list(directory.iterdir())
    except OSError as exc:
        raise PgmFilesystemError(f"Failed to list {directory}") from exc
    return sorted((p for p in entries if p.is_file() and p.suffix == ".sql"), key=lambda p: p.name)


def require_root(root: Path) -> None:
    if not root.is_dir():
        raise PgmFilesystemError(f"Directory '{root}' not found. Have you run 'pgm init'?")


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def notice(message: str) -> str:
    # RAISE NOTICE treats % as a placeholder
    return f"RAISE NOTICE {sql_literal(message.replace('%', '%%'))};"


def write_text(path: Path, content: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise PgmFilesystemError(f"Failed to write {path}") from exc
