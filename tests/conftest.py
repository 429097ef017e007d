import pytest

from harbor_monitor.sender import set_test_client

_ENV_VARS = (
    "HARBOR_MONITOR_CONFIG_PATH",
    "HARBOR_MONITOR_ENDPOINT",
    "HARBOR_MONITOR_API_KEY",
    "HARBOR_MONITOR_SHIP_ID",
    "HARBOR_MONITOR_INTERVAL",
    "HARBOR_MONITOR_METRICS",
)


@pytest.fixture(autouse=True)
def _isolated_agent(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    set_test_client(None)
