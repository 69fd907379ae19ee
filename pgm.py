#!/usr/bin/env python3
"""Manage PostgreSQL migrations, functions, triggers and views as plain files.

Usage:
    pgm init [PATH] [--existing-db | --dump FILE]
    pgm apply [--path PATH] [--dry-run] [--fake] [--minify]
    pgm compile [--path PATH] [--out FILE] [--check] [--fake] [--minify]
    pgm seed [--path PATH]
    pgm create migration|seed [--path PATH]
    pgm create function|trigger|view NAME [--path PATH] [--force]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from compile_script import build_fake_script, build_script, build_seed_script, check_compiled
from pgm_common import PgmError, PgmFilesystemError, Settings, load_settings, write_text
from postgres_tools import dump_schema, execute_sql
from scaffold import create_migration, create_object, create_seed, init_directory


def report_error(heading: str, exc: BaseException) -> None:
    print(heading, file=sys.stderr)
    cause: BaseException | None = exc
    while cause is not None:
        print(f"  - {cause}", file=sys.stderr)
        cause = cause.__cause__


def root_path(args: argparse.Namespace, settings: Settings) -> Path:
    return Path(args.path or settings.path)


def cmd_init(args: argparse.Namespace, settings: Settings) -> None:
    dump_text = None
    if args.dump:
        try:
            dump_text = Path(args.dump).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PgmFilesystemError(f"Failed to read dump file '{args.dump}'") from exc
    elif args.existing_db:
        dump_text = dump_schema(settings)

    written = init_directory(root_path(args, settings), dump_text, settings.noise_lines)
    if written:
        print(f"[init] wrote {len(written)} files")
    print("Initialized successfully")


def compile_for(args: argparse.Namespace, root: Path, minify: bool) -> str:
    if args.fake:
        return build_fake_script(root, minify)
    return build_script(root, minify)


def cmd_apply(args: argparse.Namespace, settings: Settings) -> None:
    root = root_path(args, settings)
    if args.dry_run:
        print(compile_for(args, root, args.minify), end="")
        return
    execute_sql(compile_for(args, root, True), settings)
    print("Changes applied successfully")


def cmd_compile(args: argparse.Namespace, settings: Settings) -> int:
    sql = compile_for(args, root_path(args, settings), args.minify)
    if args.check:
        if not args.out:
            raise PgmError("--check requires --out")
        return 0 if check_compiled(Path(args.out), sql) else 1
    if args.out:
        write_text(Path(args.out), sql)
        print(f"Generated {args.out}")
    else:
        print(sql, end="")
    return 0


def cmd_seed(args: argparse.Namespace, settings: Settings) -> None:
    execute_sql(build_seed_script(root_path(args, settings), minify=True), settings)
    print("Database seeded successfully")


def cmd_create(args: argparse.Namespace, settings: Settings) -> None:
    root = root_path(args, settings)
    if args.kind == "migration":
        path = create_migration(root)
    elif args.kind == "seed":
        path = create_seed(root)
    else:
        path = create_object(root, args.kind, args.name, force=args.force)
    print(f"Created {path}")


ERROR_HEADINGS = {
    "init": "Error during initialization:",
    "apply": "Error applying changes:",
    "compile": "Error compiling changes:",
    "seed": "Error seeding database:",
    "create": "Error during creation:",
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pgm",
        description="Manage postgres database migrations, triggers, views and functions",
    )
    parser.add_argument("--config", help="YAML settings file (default: pgm.yaml when present)")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Initialize the artifact directory")
    init.add_argument("path", nargs="?", help="Directory where pgm stores its files")
    source = init.add_mutually_exclusive_group()
    source.add_argument("--existing-db", action="store_true", help="Initialize from the database using pg_dump")
    source.add_argument("--dump", help="Initialize from an existing schema-only dump file")

    def add_path(p: argparse.ArgumentParser) -> None:
        p.add_argument("--path", help="Directory containing the database files")

    apply = sub.add_parser("apply", help="Compile the changes and apply them to the database")
    add_path(apply)
    apply.add_argument("--dry-run", action="store_true", help="Print the SQL instead of applying it")
    apply.add_argument("--fake", action="store_true", help="Only update pgm_ tables without running artifacts")
    apply.add_argument("--minify", action="store_true", help="Strip comments from dry-run output")

    comp = sub.add_parser("compile", help="Write the compiled SQL to stdout or a file")
    add_path(comp)
    comp.add_argument("--out", help="Output SQL file")
    comp.add_argument("--check", action="store_true", help="Verify --out is up-to-date without writing")
    comp.add_argument("--fake", action="store_true", help="Compile the bookkeeping-only script")
    comp.add_argument("--minify", action="store_true", help="Strip comment lines")

    seed = sub.add_parser("seed", help="Seed the database with data")
    add_path(seed)

    create = sub.add_parser("create", help="Create a new database object")
    kinds = create.add_subparsers(dest="kind", required=True)
    for kind in ("migration", "seed"):
        add_path(kinds.add_parser(kind, help=f"Create a new {kind}"))
    for kind in ("function", "trigger", "view"):
        p = kinds.add_parser(kind, help=f"Create a new {kind}")
        p.add_argument("name", help=f"The name of the {kind}")
        p.add_argument("--force", action="store_true", help=f"Reset the {kind} if it already exists")
        add_path(p)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    # PG* connection settings for psql and pg_dump may come from a project .env
    load_dotenv(find_dotenv(usecwd=True))
    args = parse_args(argv)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
        if args.command == "init":
            cmd_init(args, settings)
        elif args.command == "apply":
            cmd_apply(args, settings)
        elif args.command == "compile":
            return cmd_compile(args, settings)
        elif args.command == "seed":
            cmd_seed(args, settings)
        elif args.command == "create":
            cmd_create(args, settings)
    except PgmError as exc:
        report_error(ERROR_HEADINGS[args.command], exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
