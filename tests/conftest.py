"""Shared test fixtures."""

import pytest
import structlog

from moss import config as moss_config


@pytest.fixture(autouse=True)
def reset_logging_and_config():
    """Undo logging and global config set up by CLI commands under test."""
    yield
    structlog.reset_defaults()
    moss_config._config = None
