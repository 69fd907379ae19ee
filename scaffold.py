"""Create the pgm directory layout and new artifact files."""

from __future__ import annotations

import shutil
from pathlib import Path

from pgm_common import (
    CATEGORIES,
    FUNCTIONS_DIR,
    MIGRATIONS_DIR,
    SEEDS_DIR,
    SEQUENCE_WIDTH,
    TRIGGERS_DIR,
    VIEWS_DIR,
    PgmError,
    PgmFilesystemError,
    PgmScaffoldError,
    list_sql_files,
    require_root,
    write_text,
)
from tokenize_dump import check_artifact_names, split_dump, write_dump_artifacts


NAME_PLACEHOLDER = "<name_placeholder>"

TEMPLATES: dict[str, str] = {
    "function": """CREATE OR REPLACE FUNCTION <name_placeholder>()
RETURNS void AS $$
BEGIN
    -- function body
END;
$$ LANGUAGE plpgsql;
""",
    "trigger": """CREATE OR REPLACE FUNCTION <name_placeholder>()
RETURNS TRIGGER AS $$
BEGIN
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

-- CREATE OR REPLACE TRIGGER <name_placeholder>
-- BEFORE INSERT OR UPDATE ON <table>
-- FOR EACH ROW EXECUTE FUNCTION <name_placeholder>();
""",
    "view": """CREATE OR REPLACE VIEW <name_placeholder> AS
SELECT 1;
""",
}


def init_directory(root: Path, dump_text: str | None = None, noise_lines: list[str] | None = None) -> list[Path]:
    """Create the artifact folders, optionally seeded from a schema dump.

    Returns the files written from the dump.
    """
    if root.exists():
        raise PgmScaffoldError(f"Directory '{root}' already exists")

    split = split_dump(dump_text, noise_lines) if dump_text is not None else None
    if split is not None:
        check_artifact_names(split)

    try:
        for folder in (MIGRATIONS_DIR, FUNCTIONS_DIR, TRIGGERS_DIR, VIEWS_DIR):
            (root / folder).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        shutil.rmtree(root, ignore_errors=True)
        raise PgmFilesystemError(f"Failed to create {root}") from exc

    if split is None:
        return []
    try:
        return write_dump_artifacts(split, root)
    except PgmError:
        shutil.rmtree(root, ignore_errors=True)
        raise


def next_sequence_name(directory: Path) -> str:
    numbers = [int(p.stem) for p in list_sql_files(directory) if p.stem.isdigit()]
    return f"{max(numbers, default=0) + 1:0{SEQUENCE_WIDTH}d}.sql"


def _create_numbered(root: Path, folder: str) -> Path:
    require_root(root)
    directory = root / folder
    path = directory / next_sequence_name(directory)
    write_text(path, "")
    return path


def create_migration(root: Path) -> Path:
    return _create_numbered(root, MIGRATIONS_DIR)


def create_seed(root: Path) -> Path:
    return _create_numbered(root, SEEDS_DIR)


def create_object(root: Path, category: str, name: str, force: bool = False) -> Path:
    require_root(root)
    if category not in CATEGORIES:
        raise PgmScaffoldError(f"Unknown object type '{category}'")
    if not name.strip(".") or any(ch in name for ch in "/\\'"):
        raise PgmScaffoldError(f"Invalid {category} name '{name}'")

    folder, _ = CATEGORIES[category]
    path = root / folder / f"{name}.sql"
    if path.exists() and not force:
        raise PgmScaffoldError(f"{category.capitalize()} '{name}' already exists (use --force to reset it)")

    write_text(path, TEMPLATES[category].replace(NAME_PLACEHOLDER, name))
    return path
