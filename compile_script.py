"""Compile a pgm artifact tree into one idempotent PL/pgSQL script.

Functions, triggers and views are gated by the md5 of their file; migrations are
gated by presence in ``pgm_migration``. Every guard is evaluated by the database
when the script runs, so the compiled text always carries every body.
"""

from __future__ import annotations

import dataclasses
import difflib
import enum
import re
import sys
from pathlib import Path

from pgm_common import (
    BOOTSTRAP_MIGRATION,
    CATEGORIES,
    FUNCTIONS_DIR,
    MIGRATION_TABLE,
    MIGRATIONS_DIR,
    SEEDS_DIR,
    TRIGGERS_DIR,
    VIEWS_DIR,
    PgmFilesystemError,
    SqlFile,
    artifact_name,
    list_sql_files,
    notice,
    read_sql_file,
    require_root,
    sql_literal,
)


SCRIPT_TAG = "pgm"
SEED_TAG = "pgm_seed"

RUN_MARKER_RE = re.compile(r"^-- RUN (.+) --$")
DIFF_LIMIT = 200

TRACKING_TABLES_SQL = """
-- Create tables if they don't exist
CREATE TABLE IF NOT EXISTS pgm_migration (
    name TEXT PRIMARY KEY,
    applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS pgm_function (
    name TEXT PRIMARY KEY,
    hash TEXT NOT NULL,
    applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS pgm_trigger (
    name TEXT PRIMARY KEY,
    hash TEXT NOT NULL,
    applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS pgm_view (
    name TEXT PRIMARY KEY,
    hash TEXT NOT NULL,
    applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);
"""


class Stage(enum.IntEnum):
    """Position of a fragment in the compiled script; rendering sorts by it."""

    PRELUDE = 1
    TRACKING_TABLES = 2
    BOOTSTRAP = 3
    FUNCTIONS_UNCHECKED = 4
    TRIGGERS_UNCHECKED = 5
    MIGRATIONS = 6
    VIEWS = 7
    CHECK_BODIES = 8
    FUNCTIONS_CHECKED = 9
    TRIGGERS_CHECKED = 10
    SEEDS = 11


@dataclasses.dataclass
class Fragment:
    stage: Stage
    body: str
    source: str | None = None
    guard: str | None = None
    on_apply: list[str] = dataclasses.field(default_factory=list)
    on_skip: list[str] = dataclasses.field(default_factory=list)

    def render(self) -> str:
        lines: list[str] = []
        if self.source:
            lines.append(f"-- RUN {self.source} --")
        if self.guard:
            lines.append(f"IF {self.guard} THEN")
        lines.append(self.body.rstrip("\n"))
        lines.extend(self.on_apply)
        if self.guard:
            if self.on_skip:
                lines.append("ELSE")
                lines.extend(self.on_skip)
            lines.append("END IF;")
        if self.source:
            lines.append(f"-- DONE {self.source} --")
        return "\n".join(lines)


class ScriptBuilder:
    """Collects fragments and renders them inside one ``DO`` block."""

    def __init__(self, tag: str = SCRIPT_TAG):
        self.tag = tag
        self.fragments: list[Fragment] = []

    def add(self, fragment: Fragment) -> None:
        self.fragments.append(fragment)

    def extend(self, fragments: list[Fragment]) -> None:
        self.fragments.extend(fragments)

    def ordered(self) -> list[Fragment]:
        return sorted(self.fragments, key=lambda f: f.stage)

    def sources(self, stage: Stage | None = None) -> list[str]:
        return [f.source for f in self.ordered() if f.source and (stage is None or f.stage == stage)]

    def render(self, minify: bool = False) -> str:
        parts = [f"DO ${self.tag}$ BEGIN"]
        parts.extend(f.render() for f in self.ordered())
        parts.append(f"END ${self.tag}$;")
        return finish_script("\n".join(parts), minify)


def finish_script(text: str, minify: bool) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    if minify:
        lines = [line for line in lines if not line.startswith("--")]
    return "\n".join(lines) + "\n"


def upsert_hash(table: str, sql: SqlFile) -> str:
    return (
        f"INSERT INTO {table} (name, hash) VALUES ({sql_literal(sql.name)}, {sql_literal(sql.hash)}) "
        "ON CONFLICT (name) DO UPDATE SET hash = EXCLUDED.hash, applied_at = CURRENT_TIMESTAMP;"
    )


def load_directory(directory: Path) -> list[SqlFile]:
    return [read_sql_file(path) for path in list_sql_files(directory)]


def guarded_objects(files: list[SqlFile], table: str, label: str, update_hash: bool, stage: Stage) -> list[Fragment]:
    fragments: list[Fragment] = []
    for sql in files:
        source = f"{label}/{sql.name}"
        guard = (
            f"(SELECT hash FROM {table} WHERE name = {sql_literal(sql.name)}) "
            f"IS DISTINCT FROM {sql_literal(sql.hash)}"
        )
        fragment = Fragment(stage=stage, body=sql.body, source=source, guard=guard)
        if update_hash:
            fragment.on_apply = [upsert_hash(table, sql), notice(f"Applied {source}")]
            fragment.on_skip = [notice(f"Skipped {source} (no changes)")]
        fragments.append(fragment)
    return fragments


def compile_directory(directory: Path, table: str, update_hash: bool, stage: Stage) -> list[Fragment]:
    return guarded_objects(load_directory(directory), table, directory.name, update_hash, stage)


def migration_fragment(sql: SqlFile, stage: Stage) -> Fragment:
    name = sql_literal(sql.name)
    return Fragment(
        stage=stage,
        body=sql.body,
        source=f"{MIGRATIONS_DIR}/{sql.path.name}",
        guard=f"NOT EXISTS (SELECT 1 FROM {MIGRATION_TABLE} WHERE name = {name})",
        on_apply=[
            f"INSERT INTO {MIGRATION_TABLE} (name) VALUES ({name});",
            notice(f"Applied migration {sql.name}"),
        ],
        on_skip=[notice(f"Skipped migration {sql.name} (already applied)")],
    )


def bootstrap_path(root: Path) -> Path | None:
    path = root / MIGRATIONS_DIR / BOOTSTRAP_MIGRATION
    return path if path.is_file() else None


def migration_paths(root: Path) -> list[Path]:
    return [p for p in list_sql_files(root / MIGRATIONS_DIR) if p.name != BOOTSTRAP_MIGRATION]


def compile_bootstrap(root: Path) -> list[Fragment]:
    path = bootstrap_path(root)
    if path is None:
        return []
    return [migration_fragment(read_sql_file(path), Stage.BOOTSTRAP)]


def compile_migrations(root: Path) -> list[Fragment]:
    return [migration_fragment(read_sql_file(path), Stage.MIGRATIONS) for path in migration_paths(root)]


def assemble_script(root: Path) -> ScriptBuilder:
    require_root(root)
    function_table = CATEGORIES["function"][1]
    trigger_table = CATEGORIES["trigger"][1]
    view_table = CATEGORIES["view"][1]

    functions = load_directory(root / FUNCTIONS_DIR)
    triggers = load_directory(root / TRIGGERS_DIR)

    builder = ScriptBuilder(SCRIPT_TAG)
    builder.add(
        Fragment(
            Stage.PRELUDE,
            "SET LOCAL check_function_bodies = false;\nSET LOCAL client_min_messages = notice;",
        )
    )
    builder.add(Fragment(Stage.TRACKING_TABLES, TRACKING_TABLES_SQL))
    builder.extend(compile_bootstrap(root))

    # First pass: bodies are not checked, so forward references between objects resolve.
    builder.extend(guarded_objects(functions, function_table, FUNCTIONS_DIR, False, Stage.FUNCTIONS_UNCHECKED))
    builder.extend(guarded_objects(triggers, trigger_table, TRIGGERS_DIR, False, Stage.TRIGGERS_UNCHECKED))

    builder.extend(compile_migrations(root))
    builder.extend(compile_directory(root / VIEWS_DIR, view_table, True, Stage.VIEWS))

    builder.add(Fragment(Stage.CHECK_BODIES, "SET LOCAL check_function_bodies = true;"))
    builder.extend(guarded_objects(functions, function_table, FUNCTIONS_DIR, True, Stage.FUNCTIONS_CHECKED))
    builder.extend(guarded_objects(triggers, trigger_table, TRIGGERS_DIR, True, Stage.TRIGGERS_CHECKED))
    return builder


def build_script(root: Path, minify: bool = False) -> str:
    return assemble_script(root).render(minify)


def fake_migration_fragment(path: Path, stage: Stage) -> Fragment:
    name = artifact_name(path)
    return Fragment(
        stage=stage,
        body=f"INSERT INTO {MIGRATION_TABLE} (name) VALUES ({sql_literal(name)}) ON CONFLICT (name) DO NOTHING;",
        source=f"{MIGRATIONS_DIR}/{path.name}",
        on_apply=[notice(f"Fake applied migration {name}")],
    )


def assemble_fake_script(root: Path) -> ScriptBuilder:
    """Record the current tree as applied without running any artifact body."""
    require_root(root)
    builder = ScriptBuilder(SCRIPT_TAG)
    builder.add(Fragment(Stage.TRACKING_TABLES, TRACKING_TABLES_SQL))

    path = bootstrap_path(root)
    if path is not None:
        builder.add(fake_migration_fragment(path, Stage.BOOTSTRAP))
    builder.extend([fake_migration_fragment(p, Stage.MIGRATIONS) for p in migration_paths(root)])

    for category, stage in (
        ("view", Stage.VIEWS),
        ("function", Stage.FUNCTIONS_CHECKED),
        ("trigger", Stage.TRIGGERS_CHECKED),
    ):
        folder, table = CATEGORIES[category]
        for sql in load_directory(root / folder):
            builder.add(
                Fragment(
                    stage=stage,
                    body=upsert_hash(table, sql),
                    source=f"{folder}/{sql.name}",
                    on_apply=[notice(f"Fake applied {category} {sql.name}")],
                )
            )
    return builder


def build_fake_script(root: Path, minify: bool = False) -> str:
    return assemble_fake_script(root).render(minify)


def assemble_seed_script(root: Path) -> ScriptBuilder:
    require_root(root)
    seeds_dir = root / SEEDS_DIR
    if not seeds_dir.is_dir():
        raise PgmFilesystemError(f"Directory '{seeds_dir}' not found. Have you run 'pgm create seed'?")

    builder = ScriptBuilder(SEED_TAG)
    builder.add(Fragment(Stage.PRELUDE, "SET LOCAL client_min_messages = notice;"))
    for sql in load_directory(seeds_dir):
        builder.add(
            Fragment(
                stage=Stage.SEEDS,
                body=sql.body,
                source=f"{SEEDS_DIR}/{sql.name}",
                on_apply=[notice(f"Applied seed {sql.name}")],
            )
        )
    return builder


def build_seed_script(root: Path, minify: bool = False) -> str:
    return assemble_seed_script(root).render(minify)


def script_blocks(text: str) -> dict[str, list[str]]:
    """Group the lines of a compiled script by the artifact block they belong to.

    Functions and triggers appear in two passes; both land under the same source.
    Minified scripts carry no markers and yield no blocks.
    """
    blocks: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.splitlines():
        match = RUN_MARKER_RE.match(line)
        if match:
            current = match.group(1)
            blocks.setdefault(current, [])
        elif current is not None and line == f"-- DONE {current} --":
            current = None
        elif current is not None:
            blocks[current].append(line)
    return blocks


def drifted_sources(existing: str, generated: str) -> list[tuple[str, str]]:
    old, new = script_blocks(existing), script_blocks(generated)
    drift = []
    for source in sorted(old.keys() | new.keys()):
        if source not in old:
            drift.append(("added", source))
        elif source not in new:
            drift.append(("removed", source))
        elif old[source] != new[source]:
            drift.append(("changed", source))
    return drift


def check_compiled(path: Path, generated: str) -> bool:
    """Compare a previously compiled script with a fresh compilation.

    Reports the artifacts whose blocks differ, then a unified diff.
    """
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    try:
        existing = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise PgmFilesystemError(f"Failed to read {path}") from exc
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    for state, source in drifted_sources(existing, generated):
        print(f"[check] {state}: {source}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx >= DIFF_LIMIT:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False
