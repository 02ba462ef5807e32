"""Masking rule application on the target database."""

from .applier import MaskingRuleApplier
from .setup import (
    MaskedColumn,
    list_masked_columns,
    materialize_and_strip,
    prepare_target_database,
    setup_masking,
)

__all__ = [
    "MaskedColumn",
    "MaskingRuleApplier",
    "list_masked_columns",
    "materialize_and_strip",
    "prepare_target_database",
    "setup_masking",
]
