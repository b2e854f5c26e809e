import socket

import pytest

from lockwatch.utils.config import load_settings


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    return _free_port


@pytest.fixture
def settings(monkeypatch):
    # in-memory ledger, advice disabled unless a test points it somewhere
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("ADVICE_URL", "")
    load_settings.cache_clear()
    yield load_settings()
    load_settings.cache_clear()
