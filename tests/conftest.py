"""Shared pytest setup for the agent-manager tests."""

import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_manager.workspace import AGENTS_DIR_ENV_VAR, CONFIG_ENV_VAR, ROOT_ENV_VAR


@pytest.fixture(autouse=True)
def clean_agent_manager_env():
    """Run every test without workspace settings from the shell or an earlier test."""
    with patch.dict(os.environ):
        for name in (ROOT_ENV_VAR, CONFIG_ENV_VAR, AGENTS_DIR_ENV_VAR):
            os.environ.pop(name, None)
        yield
