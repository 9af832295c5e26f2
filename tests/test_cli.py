"""Tests for the stepflow CLI entry point and its exit codes."""

import json
import logging
from unittest.mock import patch

import pytest
import yaml

from stepflow.cli.main import main


@pytest.fixture
def project_dir(tmp_path):
    """Write documents to a project directory and return its path."""

    def factory(*documents):
        docs = list(documents)
        if not any(d.get("kind") == "Project" for d in docs):
            docs.insert(0, {"kind": "Project", "name": "test"})
        with open(tmp_path / "stepflow.yml", "w") as f:
            yaml.safe_dump_all(docs, f)
        return str(tmp_path)

    return factory


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep main() from reconfiguring the root logger used by pytest."""
    with patch('stepflow.cli.main.configure_logging') as configure, \
            patch('stepflow.cli.main.mask_secrets_in_logs'):
        yield configure


class TestExitCodes:
    """Exit codes returned by main()."""

    def test_validate_succeeds(self, project_dir):
        root = project_dir({"kind": "Build", "name": "api"})
        assert main(['--root', root, 'validate']) == 0

    def test_missing_project_is_a_configuration_error(self, tmp_path):
        assert main(['--root', str(tmp_path), 'validate']) == 2

    def test_invalid_project_is_a_configuration_error(self, project_dir):
        root = project_dir({"kind": "Workflow", "name": "empty", "steps": []})
        assert main(['--root', root, 'validate']) == 2

    def test_unknown_command(self, project_dir):
        assert main(['--root', project_dir(), 'deploy-everything']) == 2

    def test_undeclared_environment(self, project_dir):
        root = project_dir({"kind": "Project", "name": "test", "environments": [{"name": "dev"}]})
        assert main(['--root', root, '--env', 'prod', 'validate']) == 2
        assert main(['--root', root, '--env', 'dev', 'validate']) == 0

    def test_no_command_prints_help(self, project_dir, capsys):
        assert main(['--root', project_dir()]) == 1
        assert 'usage: stepflow' in capsys.readouterr().out

    @pytest.mark.usefixtures("requires_bash")
    def test_failing_workflow(self, project_dir, caplog):
        root = project_dir({"kind": "Workflow", "name": "build", "steps": [{"script": "exit 3"}]})

        with caplog.at_level(logging.ERROR):
            assert main(['--root', root, 'workflow', 'build']) == 1
        assert "workflow failed with 1 error," in caplog.text

    def test_failing_exec_command(self, project_dir):
        root = project_dir({"kind": "Command", "name": "nok", "exec": {"command": ["false"]}})
        assert main(['--root', root, 'nok']) == 1


class TestOutput:
    """--output rendering."""

    @pytest.mark.usefixtures("requires_bash")
    def test_json(self, project_dir, capsys):
        root = project_dir({"kind": "Workflow", "name": "build", "steps": [{"name": "hi", "script": "echo hi"}]})

        assert main(['--root', root, '--output', 'json', 'workflow', 'build']) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["errors"] == []
        assert payload["result"]["steps"]["hi"]["outputs"]["stdout"] == "hi"

    def test_yaml_after_command_name(self, project_dir, capsys):
        root = project_dir({
            "kind": "Project",
            "name": "test",
            "outputs": [{"name": "greeting", "value": "hi ${project.name}"}],
        })

        assert main(['--root', root, 'get', 'outputs', '--output', 'yaml']) == 0

        payload = yaml.safe_load(capsys.readouterr().out)
        assert payload == {"result": {"greeting": "hi test"}, "errors": []}

    def test_errors_are_rendered(self, project_dir, capsys):
        root = project_dir({"kind": "Command", "name": "nok", "exec": {"command": ["false"]}})

        assert main(['--root', root, '--output', 'json', 'nok']) == 1

        errors = json.loads(capsys.readouterr().out)["errors"]
        assert errors[0]["type"] == "operation"
        assert "exited with code 1" in errors[0]["message"]


class TestLogLevels:
    """Global logging flags."""

    def test_default_is_info(self, project_dir, quiet_logging):
        main(['--root', project_dir(), 'validate'])
        quiet_logging.assert_called_once_with(logging.INFO)

    def test_debug(self, project_dir, quiet_logging):
        main(['--root', project_dir(), '--debug', 'validate'])
        quiet_logging.assert_called_once_with(logging.DEBUG)

    def test_log_level(self, project_dir, quiet_logging):
        main(['--root', project_dir(), '--log-level', 'error', 'validate'])
        quiet_logging.assert_called_once_with(logging.ERROR)

    def test_silent(self, project_dir, quiet_logging):
        main(['--root', project_dir(), '--silent', '--debug', 'validate'])
        quiet_logging.assert_called_once_with(logging.CRITICAL)
