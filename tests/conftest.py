import pytest


@pytest.fixture(autouse=True)
def _isolated_data_dir(monkeypatch, tmp_path):
    """Keep config defaults (workspace, sessions) out of the real home directory."""
    monkeypatch.setenv("G_BRIDGE_HOME", str(tmp_path / "g-bridge-home"))
    monkeypatch.delenv("G_BRIDGE_CONFIG", raising=False)
