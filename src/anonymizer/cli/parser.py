"""
Command-line argument parser configuration.

Defines the global logging/observability options and the ``run``,
``validate``, ``preprocess`` and ``create-dump`` commands.
"""

import argparse

from ..config import DEFAULT_IMAGE


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog='anonymizer',
        description='Anonymize PostgreSQL dumps in a throwaway PostgreSQL Anonymizer container',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Anonymize a dump with a rule file
  anonymizer run --dump prod.sql --rules rules.yaml --output prod

  # Run psql/pg_dump from the host instead of inside the container
  anonymizer run --dump prod.sql --rules rules.yaml --output prod --tools-mode host

  # Check a dump before running
  anonymizer validate --dump prod.sql

  # Dump a source database to use as input (password from PGPASSWORD)
  anonymizer create-dump --host db.internal --user app --database app --file prod.sql
        """
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--log-file',
        help='Also write logs to this file (rotated)'
    )
    parser.add_argument(
        '--log-json',
        action='store_true',
        help='Emit logs as JSON'
    )
    parser.add_argument(
        '--metrics-port',
        type=int,
        help='Expose Prometheus metrics on this port while running'
    )
    parser.add_argument(
        '--pushgateway',
        help='Push metrics to this Prometheus Pushgateway when the command ends'
    )
    parser.add_argument(
        '--otlp-endpoint',
        help='Export traces to this OTLP collector (e.g. localhost:4317)'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ========== Run command ==========
    run_parser = subparsers.add_parser('run', help='Anonymize a dump')
    run_parser.add_argument('--dump', required=True, help='Input dump (plain SQL or custom archive)')
    run_parser.add_argument('--rules', required=True, help='Rule file (YAML or JSON)')
    run_parser.add_argument(
        '--output',
        required=True,
        help='Name of the anonymized dump (timestamp and prefix are added)'
    )
    run_parser.add_argument('--output-dir', help='Output directory (default: dumps)')
    run_parser.add_argument('--image', help=f'Container image (default: {DEFAULT_IMAGE})')
    run_parser.add_argument('--container-name', help='Container name (default: pg_anonymizer)')
    run_parser.add_argument('--port', type=int, help='Host port published by the container (default: 15432)')
    run_parser.add_argument(
        '--tools-mode',
        choices=['container', 'host'],
        help='Where psql/pg_restore/pg_dump run (default: container)'
    )
    run_parser.add_argument(
        '--escape-quotes',
        action='store_true',
        default=None,
        help='Double every single quote while preprocessing'
    )
    run_parser.add_argument(
        '--require-valid-dump',
        action='store_true',
        default=None,
        help='Abort when the dump does not look complete'
    )

    # ========== Validate command ==========
    validate_parser = subparsers.add_parser('validate', help='Check a dump for schema, data and version')
    validate_parser.add_argument('--dump', required=True, help='Dump to check')

    # ========== Preprocess command ==========
    preprocess_parser = subparsers.add_parser('preprocess', help='Write the preprocessed copy of a dump')
    preprocess_parser.add_argument('--dump', required=True, help='Dump to preprocess')
    preprocess_parser.add_argument(
        '--escape-quotes',
        action='store_true',
        help='Double every single quote'
    )
    preprocess_parser.add_argument('--output', help='Output path (default: <dump>.processed)')

    # ========== Create-dump command ==========
    dump_parser = subparsers.add_parser('create-dump', help='Dump a source database')
    dump_parser.add_argument('--host', default='localhost', help='Database host (default: localhost)')
    dump_parser.add_argument('--port', type=int, default=5432, help='Database port (default: 5432)')
    dump_parser.add_argument('--user', default='postgres', help='Database user (default: postgres)')
    dump_parser.add_argument('--database', default='postgres', help='Database name (default: postgres)')
    dump_parser.add_argument(
        '--file',
        default='database_dump.sql',
        help='Output file (default: database_dump.sql)'
    )

    return parser
