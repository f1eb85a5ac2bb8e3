"""Shared pytest fixtures."""

import pytest


@pytest.fixture(autouse=True)
def _log_dir(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    monkeypatch.setenv("CHAPTERSTREAM_LOG_DIR", str(tmp_path_factory.mktemp("logs")))
    monkeypatch.delenv("CHAPTERSTREAM_SETTINGS_PATH", raising=False)
