from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


# Ensure src/ is on sys.path so `import mcp_console` works without installation.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

FAKE_SERVER = Path(__file__).resolve().parent / "fixtures" / "fake_tool_server.py"


def fake_server_spec(tools: str = "read,write", **env: str) -> dict:
    """Launch fields (command/args/env) for the fake stdio tool server."""
    return {
        "command": sys.executable,
        "args": [str(FAKE_SERVER)],
        "env": {"FAKE_TOOLS": tools, **env},
    }


@pytest.fixture
def app_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    # Keep tests hermetic: avoid writing to the real user home.
    home = tmp_path / "mcp-console-home"
    home.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("MCP_CONSOLE_HOME", str(home))
    monkeypatch.setenv("MCP_CONSOLE_HANDSHAKE_TIMEOUT", "10")

    # Force a clean import so module-level constants pick up the env vars above.
    for mod in list(sys.modules):
        if mod.startswith("mcp_console.app"):
            sys.modules.pop(mod, None)
    return home


@pytest.fixture
def client(app_home: Path):
    from mcp_console.app.main import app

    with TestClient(app) as test_client:
        yield test_client
