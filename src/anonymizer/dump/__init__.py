"""Dump preprocessing, validation, import and export."""

from .preprocess import detect_dump_format, preprocess, split_plain_dump, transform_line
from .transfer import DumpTransferEngine, build_output_path, sanitize_output_name
from .validate import validate_dump

__all__ = [
    "DumpTransferEngine",
    "build_output_path",
    "detect_dump_format",
    "preprocess",
    "sanitize_output_name",
    "split_plain_dump",
    "transform_line",
    "validate_dump",
]
