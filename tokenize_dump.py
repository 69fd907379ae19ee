"""Split a schema-only pg_dump into function/trigger/view artifacts plus a bootstrap migration.

The scanner is a small state machine advanced one token at a time by ``step``.
Tokens keep their trailing whitespace, so joining every token of the input
reproduces it byte for byte; extracted statements and the residual are both
built from token text.
"""

from __future__ import annotations

import dataclasses
import re
import sys
from pathlib import Path
from typing import Union

from pgm_common import (
    BOOTSTRAP_MIGRATION,
    CATEGORIES,
    DEFAULT_NOISE_LINES,
    MIGRATIONS_DIR,
    DumpParseError,
    PgmFilesystemError,
    write_text,
)


TOKEN_RE = re.compile(r"\S+\s*")
DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z_0-9]*)?\$")
NAME_END_RE = re.compile(r"[(\s]")

FUNCTION_PREFIX = "CREATE OR REPLACE FUNCTION "
VIEW_PREFIX = "CREATE OR REPLACE VIEW "
MATERIALIZED_VIEW_PREFIX = "CREATE MATERIALIZED VIEW "

# Words following CREATE that start an extractable statement.
HEADERS: dict[tuple[str, ...], tuple[str, str]] = {
    ("FUNCTION",): ("function", FUNCTION_PREFIX),
    ("VIEW",): ("view", VIEW_PREFIX),
    ("MATERIALIZED", "VIEW"): ("view", MATERIALIZED_VIEW_PREFIX),
    ("OR", "REPLACE", "FUNCTION"): ("function", FUNCTION_PREFIX),
    ("OR", "REPLACE", "VIEW"): ("view", VIEW_PREFIX),
}

# Capture phases.
NAME = "name"
RETURNS = "returns"
RETURN_TYPE = "return_type"
DELIMITER = "delimiter"
BODY = "body"
ATOMIC_BODY = "atomic_body"
TERMINATOR = "terminator"


@dataclasses.dataclass(frozen=True)
class Token:
    text: str
    line: int

    @property
    def word(self) -> str:
        return self.text.strip()


@dataclasses.dataclass(frozen=True)
class Scanning:
    pass


@dataclasses.dataclass(frozen=True)
class Pending:
    """CREATE seen; collecting header words until the statement kind is known."""

    tokens: tuple[Token, ...]


@dataclasses.dataclass(frozen=True)
class Capturing:
    category: str
    line: int
    text: str
    phase: str
    name: str = ""
    delimiter: str = ""


ScanState = Union[Scanning, Pending, Capturing]


@dataclasses.dataclass(frozen=True)
class ExtractedObject:
    category: str
    name: str
    text: str
    line: int


@dataclasses.dataclass(frozen=True)
class Step:
    state: ScanState
    residual: str = ""
    extracted: ExtractedObject | None = None


@dataclasses.dataclass
class DumpSplit:
    objects: list[ExtractedObject]
    bootstrap: str

    def by_category(self, category: str) -> dict[str, ExtractedObject]:
        return {obj.name: obj for obj in self.objects if obj.category == category}


def tokenize(text: str) -> tuple[str, list[Token]]:
    """Return the leading whitespace of ``text`` and its tokens with 1-based line numbers."""
    stripped = text.lstrip()
    leading = text[: len(text) - len(stripped)]
    line = 1 + leading.count("\n")
    tokens: list[Token] = []
    for match in TOKEN_RE.finditer(text):
        tokens.append(Token(match.group(0), line))
        line += match.group(0).count("\n")
    return leading, tokens


def step(state: ScanState, token: Token) -> Step:
    if isinstance(state, Scanning):
        if token.word.upper() == "CREATE":
            return Step(Pending((token,)))
        return Step(state, residual=token.text)

    if isinstance(state, Pending):
        tokens = state.tokens + (token,)
        words = tuple(t.word.upper() for t in tokens[1:])
        header = HEADERS.get(words)
        if header:
            category, prefix = header
            return Step(Capturing(category=category, line=tokens[0].line, text=prefix, phase=NAME))
        if any(key[: len(words)] == words for key in HEADERS):
            return Step(Pending(tokens))
        return Step(Scanning(), residual="".join(t.text for t in tokens))

    return _capture(state, token)


def _ends_line(text: str) -> bool:
    return "\n" in text[len(text.rstrip()) :]


def _capture(state: Capturing, token: Token) -> Step:
    word = token.word
    previous = state.text
    state = dataclasses.replace(state, text=state.text + token.text)

    if state.phase == NAME:
        name = NAME_END_RE.split(word, maxsplit=1)[0]
        if not name:
            raise DumpParseError(f"CREATE {state.category.upper()} has no object name", token.line)
        if state.category == "function":
            return Step(dataclasses.replace(state, name=name, phase=RETURNS))
        state = dataclasses.replace(state, name=name, phase=TERMINATOR)
    elif state.phase == RETURNS:
        if word.upper() == "RETURNS":
            return Step(dataclasses.replace(state, phase=RETURN_TYPE))
        return Step(state)
    elif state.phase == RETURN_TYPE:
        category = "trigger" if word.upper() == "TRIGGER" else state.category
        return Step(dataclasses.replace(state, category=category, phase=DELIMITER))
    elif state.phase == DELIMITER:
        match = DOLLAR_TAG_RE.match(word)
        if match:
            delimiter = match.group(0)
            # The whole body may sit inside one token: $$...$$
            if delimiter not in word[match.end() :]:
                return Step(dataclasses.replace(state, delimiter=delimiter, phase=BODY))
            state = dataclasses.replace(state, delimiter=delimiter, phase=TERMINATOR)
        elif word.upper() == "ATOMIC" and previous.split()[-1].upper() == "BEGIN":
            return Step(dataclasses.replace(state, phase=ATOMIC_BODY))
        # Without a body the first ";" ends the statement (C functions, AS '...').
        elif not word.endswith(";"):
            return Step(state)
    elif state.phase == ATOMIC_BODY:
        # pg_dump puts the closing END; of a BEGIN ATOMIC body on its own line
        if word.upper() != "END;" or not _ends_line(previous):
            return Step(state)
        state = dataclasses.replace(state, phase=TERMINATOR)
    elif state.phase == BODY:
        if state.delimiter not in word:
            return Step(state)
        state = dataclasses.replace(state, phase=TERMINATOR)

    if word.endswith(";"):
        obj = ExtractedObject(category=state.category, name=state.name, text=state.text, line=state.line)
        return Step(Scanning(), extracted=obj)
    return Step(state)


def finish(state: ScanState) -> str:
    """Close the scan at end of input, returning any residual text still held by the state."""
    if isinstance(state, Scanning):
        return ""
    if isinstance(state, Pending):
        return "".join(t.text for t in state.tokens)

    label = f"{state.category} '{state.name}'" if state.name else state.category
    missing = {
        NAME: "an object name",
        RETURNS: "RETURNS",
        RETURN_TYPE: "a return type",
        DELIMITER: "a body",
        ATOMIC_BODY: "the END; closing its BEGIN ATOMIC body",
        BODY: f"the closing {state.delimiter} delimiter",
        TERMINATOR: "a terminating ';'",
    }[state.phase]
    raise DumpParseError(f"{label} starting here is missing {missing} before end of input", state.line)


def clean_residual(text: str, noise_lines: list[str] | None = None) -> str:
    noise = {line.strip() for line in (DEFAULT_NOISE_LINES if noise_lines is None else noise_lines)}
    lines = [
        line
        for line in text.splitlines()
        if line.strip() and not line.startswith("--") and line.strip() not in noise
    ]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def split_dump(text: str, noise_lines: list[str] | None = None) -> DumpSplit:
    leading, tokens = tokenize(text)
    state: ScanState = Scanning()
    residual: list[str] = [leading]
    objects: list[ExtractedObject] = []

    for token in tokens:
        result = step(state, token)
        state = result.state
        if result.residual:
            residual.append(result.residual)
        if result.extracted:
            objects.append(result.extracted)
    residual.append(finish(state))

    return DumpSplit(objects=objects, bootstrap=clean_residual("".join(residual), noise_lines))


def check_artifact_names(split: DumpSplit) -> None:
    for obj in split.objects:
        if not obj.name.strip(".") or any(ch in obj.name for ch in "/\\'"):
            raise PgmFilesystemError(f"Cannot store {obj.category} '{obj.name}' (line {obj.line}) as a file")


def write_dump_artifacts(split: DumpSplit, root: Path) -> list[Path]:
    check_artifact_names(split)
    written: dict[Path, ExtractedObject] = {}
    for obj in split.objects:
        folder, _ = CATEGORIES[obj.category]
        path = root / folder / f"{obj.name}.sql"
        if path in written:
            print(
                f"[init] warning: {obj.category} '{obj.name}' at line {obj.line} replaces the one "
                f"at line {written[path].line}",
                file=sys.stderr,
            )
        write_text(path, obj.text.rstrip() + "\n")
        written[path] = obj

    bootstrap_path = root / MIGRATIONS_DIR / BOOTSTRAP_MIGRATION
    write_text(bootstrap_path, split.bootstrap)
    return sorted(written) + [bootstrap_path]
