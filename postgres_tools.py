"""Run pg_dump and psql on behalf of pgm.

Connection details come from the standard PG* environment variables or from the
extra arguments configured in ``pgm.yaml``.
"""

from __future__ import annotations

import re
import subprocess
import tempfile
from pathlib import Path

from pgm_common import PgmExecutionError, Settings


PSQL_PREFIX_RE = re.compile(r"^psql:.*?:\d+: ")


def run_tool(cmd: list[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise PgmExecutionError(f"{cmd[0]} not found. Please ensure it is installed and in your PATH.") from exc
    except OSError as exc:
        raise PgmExecutionError(f"Failed to run {cmd[0]}") from exc


def dump_schema(settings: Settings) -> str:
    cmd = [settings.pg_dump.command, *settings.pg_dump.args]
    result = run_tool(cmd)
    if result.returncode != 0:
        raise PgmExecutionError(
            f"{cmd[0]} failed with exit code {result.returncode}: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result.stdout


def strip_psql_prefix(line: str) -> str:
    return PSQL_PREFIX_RE.sub("", line, count=1)


def execute_sql(sql: str, settings: Settings) -> None:
    """Execute a compiled script with psql, relaying its notices and errors to stdout."""
    with tempfile.NamedTemporaryFile("w", suffix=".sql", encoding="utf-8", delete=False) as handle:
        handle.write(sql)
        script_path = Path(handle.name)

    cmd = [settings.psql.command, *settings.psql.args, "-f", str(script_path), "-v", "ON_ERROR_STOP=1"]
    try:
        result = run_tool(cmd)
    finally:
        script_path.unlink(missing_ok=True)

    for line in result.stderr.splitlines():
        print(strip_psql_prefix(line))

    if result.returncode != 0:
        raise PgmExecutionError(
            f"{cmd[0]} command failed with exit code: {result.returncode}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
