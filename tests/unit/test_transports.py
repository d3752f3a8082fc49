from __future__ import annotations

from typing import Any

import pytest
from fastmcp import FastMCP

from paddock_auth.server import main as run_main
from paddock_auth.transports.http import HttpTransportConfig, describe_routes, run_http
from paddock_auth.transports.stdio import run_stdio


class _DummyServer:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def run(self, *, transport: str, show_banner: bool) -> None:
        self.calls.append({"transport": transport, "show_banner": show_banner})


def _http_config(**overrides) -> HttpTransportConfig:
    values = {
        "host": "127.0.0.1",
        "port": 0,
        "http_path": "/mcp/",
        "metrics_path": "metrics",
        "enable_metrics": False,
    }
    values.update(overrides)
    return HttpTransportConfig(**values)


def test_describe_routes_respects_toggles() -> None:
    assert describe_routes(_http_config()) == {"mcp": "/mcp"}
    assert describe_routes(_http_config(enable_metrics=True)) == {"mcp": "/mcp", "metrics": "/metrics"}


def test_run_http_invokes_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class DummyConfig:  # mimics uvicorn.Config signature
        def __init__(self, app, host, port, **kwargs):
            captured["app"] = app
            captured["host"] = host
            captured["port"] = port
            captured["kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["config"] = config

        async def serve(self) -> None:
            captured["served"] = True

    monkeypatch.setattr("paddock_auth.transports.http.uvicorn.Config", DummyConfig)
    monkeypatch.setattr("paddock_auth.transports.http.uvicorn.Server", DummyServer)

    server = FastMCP(name="test-http")
    run_http(server, _http_config())

    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 0
    assert captured["kwargs"]["lifespan"] == "on"
    assert captured["served"] is True
    assert captured["app"].state.fastmcp_server is server


def test_run_stdio_invokes_fastmcp() -> None:
    dummy = _DummyServer()

    run_stdio(dummy, show_banner=False)

    assert dummy.calls == [{"transport": "stdio", "show_banner": False}]


def test_run_stdio_propagates_keyboard_interrupt() -> None:
    class InterruptingServer:
        def run(self, *, transport: str, show_banner: bool) -> None:
            raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        run_stdio(InterruptingServer())


def test_main_runs_enabled_transports(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    calls: list[str] = []
    captured: dict[str, Any] = {}

    def fake_stdio(server, **_kwargs) -> None:
        calls.append("stdio")

    def fake_http(server, config) -> None:
        calls.append("http")
        captured["http_config"] = config

    monkeypatch.setattr("paddock_auth.server.run_stdio", fake_stdio)
    monkeypatch.setattr("paddock_auth.server.run_http", fake_http)

    run_main(["--enable-stdio", "true", "--http-port", "9911", "--storage-dir", str(tmp_path)])

    assert calls == ["stdio", "http"]
    assert captured["http_config"].port == 9911
    assert captured["http_config"].http_path == "/mcp"


def test_main_skips_disabled_transports(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    calls: list[str] = []
    monkeypatch.setattr("paddock_auth.server.run_stdio", lambda *a, **k: calls.append("stdio"))
    monkeypatch.setattr("paddock_auth.server.run_http", lambda *a, **k: calls.append("http"))

    run_main(["--enable-http", "false", "--storage-dir", str(tmp_path)])

    assert calls == []
