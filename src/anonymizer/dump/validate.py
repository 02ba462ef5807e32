"""Cheap pre-flight scan of a dump file."""

import logging
import re
from pathlib import Path

from ..errors import DumpImportError
from ..models import DumpFormat, DumpValidation
from .preprocess import COPY_START, detect_dump_format

logger = logging.getLogger(__name__)

VERSION_LINE = re.compile(r"-- Dumped from database version (\d+)")


def validate_dump(dump_path: str | Path) -> DumpValidation:
    """
    Scan a dump for table definitions, data and the source server version

    The scan stops as soon as all three have been seen. This is a
    heuristic, not a SQL parser: it only tells obviously wrong inputs
    (empty files, data-only or schema-only dumps) apart.

    Raises:
        DumpImportError: If the file does not exist
    """
    path = Path(dump_path)
    if not path.is_file():
        raise DumpImportError("Dump file not found", stage="init", dump=str(path))

    if detect_dump_format(path) is DumpFormat.ARCHIVE:
        # Only the magic bytes are checked for archives
        return DumpValidation(
            has_schema=False,
            has_data=False,
            source_version=None,
            dump_format=DumpFormat.ARCHIVE,
        )

    has_schema = False
    has_data = False
    source_version: int | None = None

    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            if not has_schema and "CREATE TABLE" in line:
                has_schema = True
            if not has_data and ("INSERT INTO" in line or COPY_START.match(line)):
                has_data = True
            if source_version is None:
                match = VERSION_LINE.search(line)
                if match:
                    source_version = int(match.group(1))

            if has_schema and has_data and source_version is not None:
                break

    validation = DumpValidation(
        has_schema=has_schema,
        has_data=has_data,
        source_version=source_version,
    )
    logger.debug(f"Validated {path.name}: {validation.to_dict()}")
    return validation
