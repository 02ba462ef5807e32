"""
Unit tests for CLI module

Tests for argument parsing, settings overrides and command execution.
The pipeline itself is mocked out.
"""

import argparse
import json
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from src.anonymizer.cli import (
    build_settings,
    cmd_create_dump,
    cmd_preprocess,
    cmd_run,
    cmd_validate,
    create_parser,
    main,
)
from src.anonymizer.errors import ProvisioningError


def _run_args(**overrides):
    args = create_parser().parse_args(
        ['run', '--dump', 'prod.sql', '--rules', 'rules.yaml', '--output', 'prod']
    )
    for key, value in overrides.items():
        setattr(args, key, value)
    return args


class TestCreateParser:
    """Tests for create_parser function"""

    def test_run_command_defaults(self):
        args = _run_args()

        assert args.command == 'run'
        assert args.output == 'prod'
        assert args.port is None
        assert args.escape_quotes is None
        assert args.log_level == 'INFO'

    def test_run_requires_output(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['run', '--dump', 'prod.sql', '--rules', 'rules.yaml'])

    def test_global_options(self):
        args = create_parser().parse_args(
            ['--log-level', 'DEBUG', '--log-json', '--metrics-port', '9300',
             'validate', '--dump', 'prod.sql']
        )

        assert args.log_level == 'DEBUG'
        assert args.log_json is True
        assert args.metrics_port == 9300

    def test_tools_mode_choices(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(
                ['run', '--dump', 'a', '--rules', 'b', '--output', 'c', '--tools-mode', 'ssh']
            )

    def test_create_dump_defaults(self):
        args = create_parser().parse_args(['create-dump'])

        assert args.host == 'localhost'
        assert args.port == 5432
        assert args.file == 'database_dump.sql'


class TestBuildSettings:
    """Tests for build_settings function"""

    def test_cli_overrides_environment(self, monkeypatch):
        monkeypatch.setenv('ANON_PORT', '25432')
        monkeypatch.setenv('ANON_CONTAINER_NAME', 'from_env')

        settings = build_settings(_run_args(port=35432, escape_quotes=True))

        assert settings.runtime.host_port == 35432
        assert settings.runtime.container_name == 'from_env'
        assert settings.dump.escape_quotes is True

    def test_unset_options_keep_defaults(self):
        settings = build_settings(_run_args())

        assert settings.runtime.host_port == 15432
        assert settings.dump.tools_mode == 'container'
        assert settings.dump.output_dir == Path('dumps')

    def test_output_dir(self, tmp_path):
        settings = build_settings(_run_args(output_dir=str(tmp_path)))

        assert settings.dump.output_dir == tmp_path


class TestCmdRun:
    """Tests for cmd_run function"""

    @patch('src.anonymizer.cli.commands.AnonymizationPipeline')
    def test_cmd_run_success(self, mock_pipeline_class, plain_dump, rules_file, capsys):
        # Arrange
        mock_pipeline = MagicMock()
        mock_pipeline.run.return_value.output_path = Path('dumps/x_anonymized_prod.sql')
        mock_pipeline_class.return_value = mock_pipeline
        args = _run_args(dump=str(plain_dump), rules=str(rules_file))

        # Act
        exit_code = cmd_run(args, Mock())

        # Assert
        assert exit_code == 0
        rules = mock_pipeline.run.call_args[0][1]
        assert rules.get('users').masks['email'] == 'anon.partial_email(email)'
        assert 'x_anonymized_prod.sql' in capsys.readouterr().out

    @patch('src.anonymizer.cli.commands.AnonymizationPipeline')
    def test_cmd_run_pipeline_failure(self, mock_pipeline_class, plain_dump, rules_file):
        mock_pipeline_class.return_value.run.side_effect = ProvisioningError(
            "port is already allocated", stage="provisioning"
        )
        reporter = Mock()

        exit_code = cmd_run(_run_args(dump=str(plain_dump), rules=str(rules_file)), reporter)

        assert exit_code == 1
        assert reporter.error.call_args.kwargs['failed_stage'] == 'provisioning'

    @patch('src.anonymizer.cli.commands.AnonymizationPipeline')
    def test_cmd_run_invalid_rules(self, mock_pipeline_class, plain_dump, tmp_path):
        rules = tmp_path / 'rules.yaml'
        rules.write_text('users:\n  masks: {}\n', encoding='utf-8')

        exit_code = cmd_run(_run_args(dump=str(plain_dump), rules=str(rules)), Mock())

        assert exit_code == 1
        mock_pipeline_class.assert_not_called()

    @patch('src.anonymizer.cli.commands.AnonymizationPipeline')
    def test_cmd_run_invalid_port(self, mock_pipeline_class, rules_file):
        exit_code = cmd_run(_run_args(port=0, rules=str(rules_file)), Mock())

        assert exit_code == 1
        mock_pipeline_class.assert_not_called()


class TestCmdValidate:
    """Tests for cmd_validate function"""

    def test_well_formed_dump(self, plain_dump, capsys):
        exit_code = cmd_validate(argparse.Namespace(dump=str(plain_dump)), Mock())

        assert exit_code == 0
        assert json.loads(capsys.readouterr().out)['source_version'] == 16

    def test_missing_dump(self, tmp_path):
        reporter = Mock()

        exit_code = cmd_validate(argparse.Namespace(dump=str(tmp_path / 'x.sql')), reporter)

        assert exit_code == 1
        reporter.error.assert_called_once()


class TestCmdPreprocess:
    """Tests for cmd_preprocess function"""

    def test_writes_processed_copy(self, plain_dump, capsys):
        args = argparse.Namespace(dump=str(plain_dump), escape_quotes=False, output=None)

        exit_code = cmd_preprocess(args, Mock())

        assert exit_code == 0
        assert capsys.readouterr().out.strip().endswith('sample.sql.processed')

    def test_missing_dump(self, tmp_path):
        args = argparse.Namespace(dump=str(tmp_path / 'x.sql'), escape_quotes=False, output=None)

        assert cmd_preprocess(args, Mock()) == 1

    def test_unwritable_output_reports_error(self, plain_dump, tmp_path):
        reporter = Mock()
        args = argparse.Namespace(
            dump=str(plain_dump),
            escape_quotes=False,
            output=str(tmp_path / 'missing-dir' / 'out.sql'),
        )

        exit_code = cmd_preprocess(args, reporter)

        assert exit_code == 1
        assert 'Failed to preprocess dump' in reporter.error.call_args[0][0]


class TestCmdCreateDump:
    """Tests for cmd_create_dump function"""

    @patch('src.anonymizer.cli.commands.DumpTransferEngine')
    def test_uses_password_from_environment(self, mock_engine_class, monkeypatch):
        monkeypatch.setenv('PGPASSWORD', 'source-secret')
        mock_engine_class.return_value.create_dump.return_value = Path('prod.sql')
        args = create_parser().parse_args(['create-dump', '--database', 'app'])

        exit_code = cmd_create_dump(args, Mock())

        assert exit_code == 0
        connection = mock_engine_class.return_value.create_dump.call_args[0][0]
        assert connection.password == 'source-secret'
        assert connection.database == 'app'
        assert mock_engine_class.call_args[0][1].tools_mode == 'host'


class TestMain:
    """Tests for main function"""

    @pytest.fixture(autouse=True)
    def observability(self):
        metrics = {'pipeline': Mock(), 'publisher': Mock()}
        with patch('src.anonymizer.cli.setup_logging') as mock_logging, \
                patch('src.anonymizer.cli.shutdown_logging'), \
                patch('src.anonymizer.cli.initialize_tracing') as mock_tracing, \
                patch('src.anonymizer.cli.shutdown_tracing') as mock_shutdown, \
                patch('src.anonymizer.cli.initialize_metrics', return_value=metrics):
            yield {
                'logging': mock_logging,
                'tracing': mock_tracing,
                'shutdown': mock_shutdown,
                'metrics': metrics,
            }

    def test_main_without_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 1

    def test_main_exit_code_from_command(self, plain_dump, observability):
        with pytest.raises(SystemExit) as exc_info:
            main(['--log-level', 'DEBUG', 'validate', '--dump', str(plain_dump)])

        assert exc_info.value.code == 0
        observability['logging'].assert_called_once_with(
            level='DEBUG', log_file=None, json_format=False
        )
        observability['shutdown'].assert_called_once()

    def test_main_pushes_metrics(self, plain_dump, observability):
        with pytest.raises(SystemExit):
            main(['--pushgateway', 'gateway:9091', 'validate', '--dump', str(plain_dump)])

        observability['metrics']['publisher'].push.assert_called_once_with('gateway:9091')
