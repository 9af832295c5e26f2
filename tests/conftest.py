"""Shared fixtures: projects written to temporary directories."""

import shutil
from pathlib import Path
from typing import Optional

import pytest
import yaml

from stepflow.config.resources import ProjectConfig
from stepflow.project import Project


def has_cli(command: str) -> bool:
    """Check if a CLI command is available."""
    return shutil.which(command) is not None


def write_documents(path: Path, *documents: dict) -> Path:
    """Write YAML documents to a config file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        yaml.safe_dump_all(list(documents), f, sort_keys=False)
    return path


@pytest.fixture(autouse=True)
def no_env_override(monkeypatch):
    """Tests pick environments explicitly."""
    monkeypatch.delenv("STEPFLOW_ENV", raising=False)


@pytest.fixture
def bare_project(tmp_path):
    """A project with no documents besides the Project itself."""
    return Project(tmp_path, ProjectConfig(name="test"))


@pytest.fixture
def make_project(tmp_path):
    """
    Factory writing documents to stepflow.yml and loading the project.

    A `kind: Project` document named "test" is added unless one is given.
    """

    def factory(*documents: dict, environment: Optional[str] = None) -> Project:
        docs = list(documents)
        if not any(d.get("kind") == "Project" for d in docs):
            docs.insert(0, {"kind": "Project", "name": "test"})
        write_documents(tmp_path / "stepflow.yml", *docs)
        return Project.load(tmp_path, environment=environment)

    return factory


@pytest.fixture
def requires_bash():
    if not has_cli("bash"):
        pytest.skip("bash not available")
