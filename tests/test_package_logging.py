"""Tests for the package-level logging settings."""

from __future__ import annotations

import logging
from pathlib import Path

import storemaster


def test_log_dir_defaults_to_project_logs():
    assert storemaster.resolve_log_dir({}) == storemaster.PROJECT_ROOT / ".logs"
    assert storemaster.resolve_log_dir({"STOREMASTER_LOG_DIR": "  "}) == storemaster.PROJECT_ROOT / ".logs"


def test_log_dir_honours_environment_override(tmp_path):
    assert storemaster.resolve_log_dir({"STOREMASTER_LOG_DIR": str(tmp_path)}) == Path(tmp_path)


def test_log_level_reads_environment():
    assert storemaster.resolve_log_level({}) == logging.INFO
    assert storemaster.resolve_log_level({"STOREMASTER_LOG_LEVEL": "debug"}) == logging.DEBUG
    assert storemaster.resolve_log_level({"STOREMASTER_LOG_LEVEL": "chatty"}) == logging.INFO
