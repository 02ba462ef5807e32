"""
Command-line interface for the dump anonymizer.

Available commands:
- run: Anonymize a dump in a throwaway container
- validate: Check a dump before running
- preprocess: Write the preprocessed copy of a dump
- create-dump: Dump a source database to use as input
"""

import sys

from src.utils.logging import setup_logging, shutdown_logging
from src.utils.metrics import initialize_metrics
from src.utils.tracing import initialize_tracing, shutdown_tracing

from ..reporting import LoggingReporter
from .commands import build_settings, cmd_create_dump, cmd_preprocess, cmd_run, cmd_validate
from .parser import create_parser

COMMANDS = {
    'run': cmd_run,
    'validate': cmd_validate,
    'preprocess': cmd_preprocess,
    'create-dump': cmd_create_dump,
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the anonymizer CLI"""
    parser = create_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(level=args.log_level, log_file=args.log_file, json_format=args.log_json)
    initialize_tracing(otlp_endpoint=args.otlp_endpoint)
    metrics = initialize_metrics(port=args.metrics_port)
    reporter = LoggingReporter(metrics=metrics['pipeline'], command=args.command)

    try:
        exit_code = command(args, reporter)
    finally:
        if args.pushgateway:
            metrics['publisher'].push(args.pushgateway)
        shutdown_tracing()
        shutdown_logging()

    sys.exit(exit_code)


__all__ = [
    'main',
    'build_settings',
    'cmd_run',
    'cmd_validate',
    'cmd_preprocess',
    'cmd_create_dump',
    'create_parser',
]


if __name__ == '__main__':
    main()
