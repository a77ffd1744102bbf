import pytest

from axiom_session.config import ENV_VARS


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the settings read, restoring them afterwards."""
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch
