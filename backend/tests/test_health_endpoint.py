import importlib

import pytest
from httpx import AsyncClient

from ragwright_backend.app import create_app, main

app_module = importlib.import_module("ragwright_backend.app")


@pytest.fixture
def uvicorn_calls(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, object]]:
    calls: list[dict[str, object]] = []

    def fake_run(app_location: str, *, host: str, port: int, reload: bool) -> None:
        calls.append({"app": app_location, "host": host, "port": port, "reload": reload})

    monkeypatch.setattr(app_module.uvicorn, "run", fake_run)
    for name in ("RAGWRIGHT_BACKEND_HOST", "RAGWRIGHT_BACKEND_PORT"):
        monkeypatch.delenv(name, raising=False)
    return calls


@pytest.mark.asyncio
async def test_health_reports_service_and_version(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "ragwright-test", "version": "0.1.0"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "path", "status"),
    [("post", "/health", 405), ("get", "/not-a-real-route", 404), ("get", "/v1/chat", 405)],
)
async def test_routing_errors(client: AsyncClient, method: str, path: str, status: int) -> None:
    response = await client.request(method.upper(), path)

    assert response.status_code == status


def test_create_app_rejects_blank_service_name() -> None:
    with pytest.raises(ValueError, match="service_name must not be empty"):
        create_app(service_name="  ")


def test_create_app_strips_service_name_and_defers_context() -> None:
    app = create_app(service_name="  edge  ")

    assert app.state.ragwright_context is None
    assert app.title == "ragwright-backend"


def test_main_binds_all_interfaces_by_default(uvicorn_calls: list[dict[str, object]]) -> None:
    main()

    assert uvicorn_calls == [
        {"app": "ragwright_backend.app:app", "host": "0.0.0.0", "port": 8000, "reload": False}
    ]


def test_main_honours_host_and_port_env(
    monkeypatch: pytest.MonkeyPatch, uvicorn_calls: list[dict[str, object]]
) -> None:
    monkeypatch.setenv("RAGWRIGHT_BACKEND_HOST", " 127.0.0.1 ")
    monkeypatch.setenv("RAGWRIGHT_BACKEND_PORT", "9001")

    main()

    assert uvicorn_calls[0]["host"] == "127.0.0.1"
    assert uvicorn_calls[0]["port"] == 9001


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("RAGWRIGHT_BACKEND_PORT", "0", "must be greater than zero"),
        ("RAGWRIGHT_BACKEND_PORT", " ", "must not be empty"),
        ("RAGWRIGHT_BACKEND_HOST", "  ", "must not be empty"),
    ],
)
def test_main_rejects_invalid_binding(
    monkeypatch: pytest.MonkeyPatch,
    uvicorn_calls: list[dict[str, object]],
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        main()

    assert uvicorn_calls == []
