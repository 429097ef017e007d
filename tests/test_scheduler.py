import asyncio
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import httpx
import psutil
import pytest
from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from harbor_monitor.collectors import CollectorRegistry
from harbor_monitor.config import AgentConfig
from harbor_monitor.main import run_loop
from harbor_monitor.scheduler import Sampler
from harbor_monitor.sender import set_test_client

T0 = datetime(2025, 1, 1, 0, 0, 0, tzinfo=UTC)


def _harbor(status_code=200):
    received = []
    app = FastAPI()

    @app.post("/api/batch")
    async def ingest(payload=Body(...)):
        received.append(payload)
        return JSONResponse({"ok": status_code == 200}, status_code=status_code)

    return app, received


def _clock(*instants):
    it = iter(instants)
    return lambda: next(it)


def _config(**overrides):
    values = dict(endpoint="http://testserver/api/batch", api_key="key", ship_id="web-1", sampling_interval=5)
    values.update(overrides)
    return AgentConfig(**values)


@pytest.fixture
def registry(tmp_path):
    return CollectorRegistry(proc_root=tmp_path / "proc", sys_root=tmp_path / "sys")


@pytest.fixture
def fake_host(monkeypatch):
    host = {"recv": 0}
    monkeypatch.setattr(psutil, "cpu_percent", lambda interval=None, percpu=False: 17.0)
    monkeypatch.setattr(psutil, "virtual_memory", lambda: SimpleNamespace(percent=55.0))
    monkeypatch.setattr(
        psutil,
        "net_io_counters",
        lambda pernic=False: {"eth0": SimpleNamespace(bytes_recv=host["recv"], bytes_sent=0)},
    )
    return host


def _client(app):
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    set_test_client(client)
    return client


def test_network_rate_over_two_ticks(registry, fake_host):
    app, received = _harbor()
    config = _config(enabled_metrics=["cpu_usage", "network_in"])
    sampler = Sampler(config, registry=registry, clock=_clock(T0, T0 + timedelta(seconds=5)))

    async def _run():
        client = _client(app)
        fake_host["recv"] = 1000
        first = await sampler.tick()
        fake_host["recv"] = 2500
        second = await sampler.tick()
        await client.aclose()
        return first, second

    first, second = asyncio.run(_run())
    assert first.success and second.success
    assert [(s["cargo_id"], s["value"]) for s in received[0]] == [("cpu_usage", 17.0), ("network_in", 0.0)]
    assert [(s["cargo_id"], s["value"]) for s in received[1]] == [("cpu_usage", 17.0), ("network_in", 300.0)]
    assert {s["time"] for s in received[0]} == {"2025-01-01T00:00:00.000Z"}
    assert {s["time"] for s in received[1]} == {"2025-01-01T00:00:05.000Z"}
    assert {s["ship_id"] for batch in received for s in batch} == {"web-1"}


def test_loop_keeps_running_after_delivery_failure(registry, fake_host):
    app, received = _harbor(status_code=500)
    config = _config(enabled_metrics=["cpu_usage"])
    sampler = Sampler(config, registry=registry)
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            raise asyncio.CancelledError()

    async def _run():
        client = _client(app)
        try:
            await sampler.run_forever(sleep=fake_sleep)
        except asyncio.CancelledError:
            pass
        finally:
            await client.aclose()

    asyncio.run(_run())
    assert sleeps == [5, 5, 5]
    assert len(received) == 3


def test_loop_survives_unexpected_tick_errors(registry, fake_host, monkeypatch):
    app, received = _harbor()
    sampler = Sampler(_config(enabled_metrics=["cpu_usage"]), registry=registry)
    real_assemble = sampler.assembler.assemble
    calls = []

    def flaky(now):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        return real_assemble(now)

    monkeypatch.setattr(sampler.assembler, "assemble", flaky)
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise asyncio.CancelledError()

    async def _run():
        client = _client(app)
        try:
            await sampler.run_forever(sleep=fake_sleep)
        except asyncio.CancelledError:
            pass
        finally:
            await client.aclose()

    asyncio.run(_run())
    assert len(calls) == 2
    assert len(received) == 1


def test_self_test_reports_missing_source(registry, fake_host):
    app, received = _harbor()
    config = _config(enabled_metrics=["cpu_usage", "entropy", "ram_usage"])
    sampler = Sampler(config, registry=registry)
    lines = []

    async def _run():
        client = _client(app)
        try:
            return await sampler.self_test(out=lines.append)
        finally:
            await client.aclose()

    status = asyncio.run(_run())
    assert status == 1
    assert "Testing cpu_usage... OK" in lines
    assert "Testing ram_usage... OK" in lines
    assert any(line.startswith("Testing entropy... FAILED") for line in lines)
    assert lines[-1] == "The following metrics failed to collect: entropy"
    assert received == []


def test_self_test_passes_and_sends_test_point(tmp_path, fake_host):
    entropy = tmp_path / "proc" / "sys" / "kernel" / "random" / "entropy_avail"
    entropy.parent.mkdir(parents=True)
    entropy.write_text("256\n")
    registry = CollectorRegistry(proc_root=tmp_path / "proc", sys_root=tmp_path / "sys")
    app, received = _harbor()
    sampler = Sampler(_config(enabled_metrics=["cpu_usage", "entropy"]), registry=registry, clock=lambda: T0)
    lines = []

    async def _run():
        client = _client(app)
        try:
            return await sampler.self_test(probe=True, out=lines.append)
        finally:
            await client.aclose()

    assert asyncio.run(_run()) == 0
    assert "All metrics collected successfully!" in lines
    assert received == [[{"time": "2025-01-01T00:00:00.000Z", "ship_id": "web-1", "cargo_id": "test", "value": 1.0}]]


def test_self_test_fails_when_test_point_rejected(registry, fake_host):
    app, _ = _harbor(status_code=401)
    sampler = Sampler(_config(enabled_metrics=["cpu_usage"]), registry=registry)
    lines = []

    async def _run():
        client = _client(app)
        try:
            return await sampler.self_test(probe=True, out=lines.append)
        finally:
            await client.aclose()

    assert asyncio.run(_run()) == 1
    assert any("HTTP 401" in line for line in lines)


def test_agent_integration_short_run(registry, fake_host):
    app, received = _harbor()
    cfg = _config(sampling_interval=1, enabled_metrics=["cpu_usage", "ram_usage"])

    async def runner():
        client = _client(app)
        task = asyncio.create_task(run_loop(cfg, Sampler(cfg, registry=registry)))
        await asyncio.sleep(0.3)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await client.aclose()

    asyncio.run(runner())
    assert received
    assert [s["cargo_id"] for s in received[0]] == ["cpu_usage", "ram_usage"]
