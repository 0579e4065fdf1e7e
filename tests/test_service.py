import asyncio
import dataclasses
import signal
import socket

import pytest
import yaml

from conftest import FakeModbus, FakeResponse, float_words, make_config
from meter_collector.common.config import ChannelConfig, HttpSettings
from meter_collector.common.exceptions import InvalidConfigError
from meter_collector.main import main
from meter_collector.services.device.poller import PollerStatus
from meter_collector.services.device.service import DeviceService


def test_run_returns_zero_on_shutdown_request():
    modbus = FakeModbus(default=lambda address, count, unit: float_words(7.0))
    service = DeviceService(make_config(), client_factory=modbus, serve_http=False)

    async def scenario():
        asyncio.get_running_loop().call_later(0.05, service.request_shutdown)
        return await asyncio.wait_for(service.run(), timeout=5)

    assert asyncio.run(scenario()) == 0
    assert service.poller.status == PollerStatus.STOPPED
    assert all(r.value == 7.0 for r in service.store.get_all())
    assert not service.channel.has_handle


def test_run_returns_one_when_reconnect_ceiling_reached():
    modbus = FakeModbus(connect_ok=False)
    service = DeviceService(
        make_config(read_interval_ms=1, max_reconnect_count=2),
        client_factory=modbus,
        serve_http=False,
    )

    exit_code = asyncio.run(asyncio.wait_for(service.run(), timeout=5))

    assert exit_code == 1
    assert modbus.connect_attempts == 2
    assert service.get_status()["poller"]["status"] == "stopped"


def test_invalid_channel_config_escalates_at_startup():
    modbus = FakeModbus()
    config = make_config(channel=ChannelConfig(host="300.1.1.1"))
    service = DeviceService(config, client_factory=modbus, serve_http=False)

    with pytest.raises(InvalidConfigError):
        asyncio.run(service.start())
    assert modbus.connect_attempts == 0


def test_cli_dry_run(tmp_path, capsys):
    path = tmp_path / "collector.yaml"
    path.write_text(yaml.safe_dump({
        "channel": {"transport": "tcp", "host": "10.0.0.5"},
        "devices": [{"id": 1, "name": "m1"}],
        "service": {"log_format": "text"},
    }))

    assert main(["--config", str(path), "--dry-run"]) == 0
    out = capsys.readouterr().out
    assert "m1" in out
    assert "Dry run mode" in out


def test_cli_missing_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "missing.yaml")]) == 1
    assert "Configuration file not found" in capsys.readouterr().err


@pytest.fixture
def busy_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def test_stop_returns_promptly_during_retry_delay():
    modbus = FakeModbus(default=FakeResponse(error=True))
    config = make_config(max_retry_count=5, retry_delay_ms=1000)
    service = DeviceService(config, client_factory=modbus, serve_http=False)

    async def scenario():
        await service.start()
        await asyncio.sleep(0.1)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await asyncio.wait_for(service.stop(), timeout=5)
        return loop.time() - start

    elapsed = asyncio.run(scenario())

    assert elapsed < 0.5
    assert service.poller.status == PollerStatus.STOPPED
    assert len(modbus.reads) == 1
    assert not service.channel.has_handle


def test_http_bind_failure_cleans_up(busy_port):
    modbus = FakeModbus()
    config = dataclasses.replace(
        make_config(), http=HttpSettings(host="127.0.0.1", port=busy_port)
    )
    service = DeviceService(config, client_factory=modbus)

    with pytest.raises(OSError):
        asyncio.run(asyncio.wait_for(service.run(), timeout=5))

    assert service.api._runner is None
    assert service._shutdown_event.is_set()
    assert modbus.connect_attempts == 0


def test_cli_reports_http_bind_failure(tmp_path, busy_port):
    path = tmp_path / "collector.yaml"
    path.write_text(yaml.safe_dump({
        "channel": {"transport": "tcp", "host": "127.0.0.1"},
        "devices": [{"id": 1, "name": "m1"}],
        "http": {"host": "127.0.0.1", "port": busy_port},
        "service": {"log_format": "text"},
    }))

    assert main(["--config", str(path)]) == 1


def test_signal_fallback_defers_shutdown_to_the_loop(monkeypatch):
    service = DeviceService(make_config(), client_factory=FakeModbus(), serve_http=False)
    installed = {}

    def unsupported(sig, callback, *args):
        raise NotImplementedError

    async def scenario():
        loop = asyncio.get_running_loop()
        monkeypatch.setattr(loop, "add_signal_handler", unsupported)
        monkeypatch.setattr(signal, "signal", lambda sig, handler: installed.setdefault(sig, handler))
        try:
            service._setup_signal_handlers()
        finally:
            monkeypatch.undo()

        installed[signal.SIGTERM](signal.SIGTERM, None)
        set_in_handler = service._shutdown_event.is_set()
        await asyncio.sleep(0)
        return set_in_handler, service._shutdown_event.is_set()

    assert asyncio.run(scenario()) == (False, True)
    assert set(installed) == {signal.SIGTERM, signal.SIGINT}
