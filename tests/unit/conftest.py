# pylint: disable=missing-module-docstring,missing-function-docstring

from __future__ import annotations

import json
from typing import Any

import pytest

from fakes import FakeConnector
from observability import logger


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def log_lines(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    """Capture log events as dicts instead of printing them."""
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(logger, "_print", lambda line: captured.append(json.loads(line)))
    return captured


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "_print", lambda line: None)
    monkeypatch.setattr(logger, "_debug_enabled", False)
