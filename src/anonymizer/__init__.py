"""
PostgreSQL dump anonymizer.

Restores a dump into a throwaway PostgreSQL Anonymizer container, binds
masking rules to its columns, and exports a sanitized dump.

Usage:
    from src.anonymizer import AnonymizationPipeline, AnonymizerSettings, load_rules

    pipeline = AnonymizationPipeline(AnonymizerSettings.from_env())
    result = pipeline.run("prod.sql", load_rules("rules.yaml"), "prod")
"""

__version__ = "1.0.0"

from .config import AnonymizerSettings, DumpSettings, MaskingSettings, RuntimeSettings
from .errors import (
    AnonymizerError,
    ConnectivityError,
    DumpImportError,
    ExportError,
    HealthCheckTimeoutError,
    MaskingBindError,
    ProvisioningError,
    RuleSetError,
    SchemaValidationError,
)
from .models import MaskingSummary, RuleSet, TableRule
from .pipeline import AnonymizationPipeline, PipelineResult, PipelineState
from .reporting import LoggingReporter, NullReporter, Reporter
from .rules import load_rules, parse_rules

__all__ = [
    "AnonymizationPipeline",
    "AnonymizerError",
    "AnonymizerSettings",
    "ConnectivityError",
    "DumpImportError",
    "DumpSettings",
    "ExportError",
    "HealthCheckTimeoutError",
    "LoggingReporter",
    "MaskingBindError",
    "MaskingSettings",
    "MaskingSummary",
    "NullReporter",
    "PipelineResult",
    "PipelineState",
    "ProvisioningError",
    "Reporter",
    "RuleSet",
    "RuleSetError",
    "RuntimeSettings",
    "SchemaValidationError",
    "TableRule",
    "__version__",
]
