"""
Unit tests for logging setup.
"""

import logging
import sys
from unittest.mock import patch

import pytest

from treecrypt.logging_config import configure_logging


@pytest.fixture(autouse=True)
def restore_botocore_level():
    logger = logging.getLogger("botocore")
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.mark.parametrize("level, expected", [
    (logging.DEBUG, logging.DEBUG),
    ("warning", logging.WARNING),
    ("not-a-level", logging.INFO),
])
def test_level_is_resolved(level, expected):
    with patch("treecrypt.logging_config.logging.basicConfig") as basic_config:
        configure_logging(level)

    kwargs = basic_config.call_args[1]
    assert kwargs["level"] == expected
    assert kwargs["stream"] is sys.stderr


def test_botocore_never_logs_below_info():
    with patch("treecrypt.logging_config.logging.basicConfig"):
        configure_logging("DEBUG")
    assert logging.getLogger("botocore").level == logging.INFO
