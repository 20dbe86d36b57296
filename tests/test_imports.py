"""Tests that every shipctl module imports cleanly."""

import importlib
import pkgutil

import pytest

import shipctl

MODULES = sorted(
    info.name for info in pkgutil.walk_packages(shipctl.__path__, prefix="shipctl.")
)


def test_modules_discovered():
    assert "shipctl.deploy.state" in MODULES
    assert "shipctl.cli" in MODULES


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    module = importlib.import_module(name)
    assert module.__name__ == name


def test_state_annotations_resolve():
    from typing import get_type_hints

    from shipctl.deploy.models import DeploymentAttempt
    from shipctl.deploy.state import DeploymentState

    hints = get_type_hints(DeploymentState.list)
    assert hints["return"] == list[DeploymentAttempt]
