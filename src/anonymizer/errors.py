"""
Error taxonomy for the anonymization pipeline.

Every error carries the pipeline stage it was raised in (when known) and a
context dict (table, column, container, command, ...) that ends up in the
structured log record.
"""

from typing import Any


class AnonymizerError(Exception):
    """Base exception for all pipeline errors."""

    fatal = True

    def __init__(self, message: str, stage: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ProvisioningError(AnonymizerError):
    """Raised when the container cannot be created, started, or exits while starting."""

    pass


class HealthCheckTimeoutError(AnonymizerError):
    """Raised when the container never reports healthy within the attempt budget."""

    pass


class ConnectivityError(AnonymizerError):
    """Raised when the database never accepts connections within the attempt budget."""

    pass


class DumpImportError(AnonymizerError):
    """Raised on unrecoverable restore failures (server unreachable, tool missing, disk full)."""

    pass


class SchemaValidationError(AnonymizerError):
    """Raised when a rule names a table absent from the live schema. Recovered by skipping."""

    fatal = False


class MaskingBindError(AnonymizerError):
    """Raised when a mask expression cannot be bound to a column. Rolls the run back."""

    pass


class ExportError(AnonymizerError):
    """Raised when masking metadata cannot be stripped or pg_dump fails."""

    pass


class RuleSetError(AnonymizerError):
    """Raised when a rule file is missing, unparsable, or fails schema validation."""

    pass
