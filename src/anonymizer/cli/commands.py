"""
CLI command implementations.

Each ``cmd_*`` function takes the parsed arguments and returns the process
exit status.
"""

import argparse
import json
import logging
import os
from pathlib import Path

from ..config import AnonymizerSettings, DumpSettings, RuntimeSettings
from ..dump import DumpTransferEngine, preprocess, validate_dump
from ..errors import AnonymizerError
from ..models import ConnectionConfig
from ..pipeline import AnonymizationPipeline
from ..reporting import Reporter
from ..rules import load_rules

logger = logging.getLogger(__name__)


def build_settings(args: argparse.Namespace) -> AnonymizerSettings:
    """Environment settings with command-line overrides applied."""
    settings = AnonymizerSettings.from_env().with_overrides(
        runtime__image=args.image,
        runtime__container_name=args.container_name,
        runtime__host_port=args.port,
        dump__output_dir=Path(args.output_dir) if args.output_dir else None,
        dump__tools_mode=args.tools_mode,
        dump__escape_quotes=args.escape_quotes,
        dump__require_valid_dump=args.require_valid_dump,
    )
    return settings.validate()


def cmd_run(args: argparse.Namespace, reporter: Reporter) -> int:
    """
    Anonymize a dump end to end

    Args:
        args: Parsed command-line arguments
        reporter: Progress observer

    Returns:
        0 on success, 1 on any fatal error
    """
    try:
        settings = build_settings(args)
        rules = load_rules(args.rules)
    except (AnonymizerError, ValueError) as e:
        reporter.error(f"Invalid configuration: {e}")
        return 1

    pipeline = AnonymizationPipeline(settings, reporter=reporter)
    try:
        result = pipeline.run(args.dump, rules, args.output)
    except AnonymizerError as e:
        reporter.error(
            f"Anonymization failed: {e}",
            error_type=type(e).__name__,
            failed_stage=e.stage,
        )
        return 1

    print(result.output_path)
    return 0


def cmd_validate(args: argparse.Namespace, reporter: Reporter) -> int:
    """Print the validation result of a dump as JSON; 1 when not well formed."""
    try:
        validation = validate_dump(args.dump)
    except AnonymizerError as e:
        reporter.error(str(e))
        return 1

    print(json.dumps(validation.to_dict(), indent=2))
    return 0 if validation.is_well_formed else 1


def cmd_preprocess(args: argparse.Namespace, reporter: Reporter) -> int:
    """Write the preprocessed copy of a dump."""
    dump_path = Path(args.dump)
    if not dump_path.is_file():
        reporter.error(f"Dump file not found: {dump_path}")
        return 1

    try:
        processed = preprocess(
            dump_path, escape_quotes=args.escape_quotes, output_path=args.output
        )
    except OSError as e:
        reporter.error(f"Failed to preprocess dump: {e}", dump=str(dump_path))
        return 1

    print(processed)
    return 0


def cmd_create_dump(args: argparse.Namespace, reporter: Reporter) -> int:
    """Plain-format dump of a source database with the local pg_dump."""
    connection = ConnectionConfig(
        host=args.host,
        port=args.port,
        user=args.user,
        password=os.getenv('PGPASSWORD', ''),
        database=args.database,
    )
    engine = DumpTransferEngine(
        RuntimeSettings(), DumpSettings(tools_mode='host'), reporter=reporter
    )
    try:
        output = engine.create_dump(connection, args.file)
    except AnonymizerError as e:
        reporter.error(f"Failed to create dump: {e}")
        return 1

    print(output)
    return 0
