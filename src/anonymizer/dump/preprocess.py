"""
Streaming text transforms applied to plain SQL dumps before import.

Dumps can be far larger than memory, so every function here reads and
writes line by line. Archive dumps (``pg_dump -Fc``) are binary and are
never rewritten.
"""

import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ..models import DumpFormat

logger = logging.getLogger(__name__)

ARCHIVE_MAGIC = b"PGDMP"

# Unknown to servers older than 17; harmless to drop
TRANSACTION_TIMEOUT = re.compile(r"^(\s*)(SET transaction_timeout = 0;)")
EMPTY_SEARCH_PATH = "SELECT pg_catalog.set_config('search_path', '', false);"
PUBLIC_SEARCH_PATH = "SELECT pg_catalog.set_config('search_path', 'public', false);"

COPY_START = re.compile(r"^COPY\s+\S.*\s+FROM\s+stdin;\s*$")
COPY_END = "\\."
SESSION_HEADER = re.compile(r"^(SET\s|SELECT pg_catalog\.set_config\()")
SEQUENCE_SETVAL = "SELECT pg_catalog.setval("
INSERT_START = "INSERT INTO"
# String literal, line comment or dollar-quote tag
QUOTE_START = re.compile(r"'|--|(?<![A-Za-z0-9_$])\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")

REPLICA_MODE = "SET session_replication_role = replica;\n"

# Dumps are written back byte for byte, whatever their encoding
_TEXT_OPTIONS = {"encoding": "utf-8", "errors": "surrogateescape", "newline": ""}


def detect_dump_format(path: str | Path) -> DumpFormat:
    """Return ARCHIVE for custom-format archives, PLAIN otherwise."""
    with open(path, "rb") as f:
        header = f.read(len(ARCHIVE_MAGIC))
    return DumpFormat.ARCHIVE if header == ARCHIVE_MAGIC else DumpFormat.PLAIN


def transform_line(line: str, escape_quotes: bool = False) -> str:
    """
    Rewrite one dump line

    - ``SET transaction_timeout = 0;`` is commented out
    - an empty ``search_path`` set_config is pointed at ``public``
    - with ``escape_quotes``, every single quote is doubled

    The first two rewrites are idempotent; quote escaping is not.
    """
    line = TRANSACTION_TIMEOUT.sub(r"\1-- \2", line)
    line = line.replace(EMPTY_SEARCH_PATH, PUBLIC_SEARCH_PATH)
    if escape_quotes:
        line = line.replace("'", "''")
    return line


def preprocess(
    dump_path: str | Path,
    escape_quotes: bool = False,
    output_path: str | Path | None = None,
) -> Path:
    """
    Write a transformed copy of ``dump_path`` and return its path

    The original file is left untouched. The copy is written next to it
    as ``<dump>.processed`` unless ``output_path`` is given.
    """
    source = Path(dump_path)
    target = Path(output_path) if output_path else source.with_name(source.name + ".processed")

    if detect_dump_format(source) is DumpFormat.ARCHIVE:
        logger.info(f"Archive dump {source.name}: copying without text transforms")
        shutil.copyfile(source, target)
        return target

    lines = 0
    with open(source, **_TEXT_OPTIONS) as src, open(target, "w", **_TEXT_OPTIONS) as dst:
        for line in src:
            dst.write(transform_line(line, escape_quotes=escape_quotes))
            lines += 1

    logger.info(f"Preprocessed {lines} lines of {source.name} into {target.name}")
    return target


@dataclass(frozen=True)
class SplitDump:
    """Schema and data halves of a plain dump."""

    schema_path: Path
    data_path: Path

    @property
    def paths(self) -> tuple[Path, Path]:
        return (self.schema_path, self.data_path)


def _ends_statement(buffer: str) -> bool:
    # Outside a string literal when the quote count is even
    return buffer.rstrip().endswith(";") and buffer.count("'") % 2 == 0


def _open_dollar_quote(line: str, tag: str | None) -> str | None:
    """Return the dollar-quote tag still open at the end of ``line``."""
    pos = 0
    while pos < len(line):
        if tag is not None:
            end = line.find(tag, pos)
            if end < 0:
                return tag
            pos = end + len(tag)
            tag = None
            continue

        match = QUOTE_START.search(line, pos)
        if match is None or match.group(0) == "--":
            return None
        if match.group(0) == "'":
            # A doubled quote reads as two adjacent literals
            end = line.find("'", match.end())
            if end < 0:
                return None
            pos = end + 1
        else:
            tag = match.group(0)
            pos = match.end()
    return tag


def split_plain_dump(dump_path: str | Path, work_dir: str | Path | None = None) -> SplitDump:
    """
    Split a plain dump into a schema-only and a data-only script

    COPY blocks, INSERT statements and sequence ``setval`` calls go to
    the data script; session settings go to both; everything else is
    schema. Dollar-quoted bodies (functions, procedures, DO blocks) stay
    whole in the schema script whatever their lines look like. The data
    script disables triggers and FK checks through
    ``session_replication_role`` so table order does not matter.

    Both scripts are written to ``work_dir``, a new temporary directory
    when not given; the caller removes them.
    """
    source = Path(dump_path)
    directory = Path(work_dir) if work_dir else Path(tempfile.mkdtemp(prefix="anon-split-"))
    split = SplitDump(
        schema_path=directory / (source.name + ".schema.sql"),
        data_path=directory / (source.name + ".data.sql"),
    )

    in_copy = False
    insert_buffer: str | None = None
    dollar_tag: str | None = None
    counts = {"schema": 0, "data": 0}

    with open(source, **_TEXT_OPTIONS) as src, \
            open(split.schema_path, "w", **_TEXT_OPTIONS) as schema, \
            open(split.data_path, "w", **_TEXT_OPTIONS) as data:
        data.write(REPLICA_MODE)

        for line in src:
            if in_copy:
                data.write(line)
                if line.rstrip("\r\n") == COPY_END:
                    in_copy = False
                continue

            if insert_buffer is not None:
                data.write(line)
                insert_buffer += line
                if _ends_statement(insert_buffer):
                    insert_buffer = None
                continue

            if dollar_tag is not None:
                schema.write(line)
                counts["schema"] += 1
                dollar_tag = _open_dollar_quote(line, dollar_tag)
                continue

            if COPY_START.match(line):
                in_copy = True
                counts["data"] += 1
                data.write(line)
            elif line.startswith(INSERT_START):
                counts["data"] += 1
                data.write(line)
                if not _ends_statement(line):
                    insert_buffer = line
            elif line.startswith(SEQUENCE_SETVAL):
                data.write(line)
            elif SESSION_HEADER.match(line):
                schema.write(line)
                data.write(line)
            else:
                schema.write(line)
                if line.strip() and not line.startswith("--"):
                    counts["schema"] += 1
                    dollar_tag = _open_dollar_quote(line, None)

    if dollar_tag is not None:
        logger.warning(f"Unterminated {dollar_tag} quote at the end of {source.name}")

    logger.info(
        f"Split {source.name}: {counts['schema']} schema line(s), "
        f"{counts['data']} data statement(s)"
    )
    return split
