"""Tests for logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from chapterstream.utils import logging as logging_utils


def _flush_root() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_setup_logging_creates_rotating_file(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"

    log_path = logging_utils.setup_logging(level=logging.INFO, log_dir=log_dir, console=False, force=True)

    logger = logging_utils.get_logger("chapterstream.tests")
    logger.info("Logging smoke test")
    _flush_root()

    assert log_path == log_dir / "chapterstream.log"
    assert log_path.exists()
    assert "Logging smoke test" in log_path.read_text(encoding="utf-8")
    assert logging_utils.get_log_path() == log_path


def test_setup_logging_is_idempotent_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False, force=True)
    handlers = list(logging.getLogger().handlers)

    second = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False)

    assert second == first
    assert logging.getLogger().handlers == handlers
    assert not (tmp_path / "two").exists()


def test_log_dir_env_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CHAPTERSTREAM_LOG_DIR", str(tmp_path / "env-logs"))

    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path.parent == tmp_path / "env-logs"


def test_noisy_loggers_are_quieted(tmp_path: Path) -> None:
    logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING
