import asyncio

from aiohttp import test_utils

from conftest import FakeModbus, make_devices
from meter_collector.common.config import ChannelConfig, HttpRoutes, HttpSettings
from meter_collector.services.api.server import ApiServer, render_value
from meter_collector.services.device.channel import ModbusChannel
from meter_collector.services.device.snapshot import Reading, SnapshotStore

DEVICES = make_devices(4)


def make_server(stats=None):
    store = SnapshotStore(d.id for d in DEVICES)
    store.replace_all([
        Reading.ok(1, 12.3456),
        Reading.failed(2, retry_count=3, error="timeout"),
        Reading.ok(3, float("nan")),
    ])
    channel = ModbusChannel(ChannelConfig(host="127.0.0.1"), client_factory=FakeModbus())
    server = ApiServer(
        store=store,
        channel=channel,
        devices=DEVICES,
        settings=HttpSettings(),
        stats_provider=(lambda: stats) if stats is not None else None,
    )
    return server


def request(server, path):
    async def fetch():
        async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
            resp = await client.get(path)
            assert resp.status == 200
            return await resp.json()

    return asyncio.run(fetch())


def test_render_value():
    assert render_value(Reading.ok(1, 1.23456), 2) == 1.23
    assert render_value(Reading.ok(1, 1.23456), 0) == 1.0
    assert render_value(Reading.failed(1), 2) == -1
    assert render_value(Reading.ok(1, float("inf")), 2) == -1
    assert render_value(Reading.unavailable(1), 2) == -1


def test_all_meters_envelope():
    body = request(make_server(), "/api/collect/v1/meters/all")

    assert body["result"] == 0
    assert body["message"] == [12.35, -1, -1, -1]
    assert isinstance(body["timestamp"], int)


def test_single_meter():
    body = request(make_server(), "/api/collect/v1/meters/1")
    assert body["result"] == 0
    assert body["message"] == [12.35]

    body = request(make_server(), "/api/collect/v1/meters/2")
    assert body["result"] == 0
    assert body["message"] == [-1]


def test_single_meter_unknown_id():
    body = request(make_server(), "/api/collect/v1/meters/99")
    assert body["result"] == -1
    assert body["message"] == [-1]


def test_single_meter_invalid_id():
    body = request(make_server(), "/api/collect/v1/meters/abc")
    assert body["result"] == -1
    assert body["message"] == "error: invalid meter id"


def test_detail():
    body = request(make_server(), "/api/collect/v1/meters/2/detail")
    detail = body["message"]

    assert body["result"] == 0
    assert detail["id"] == 2
    assert detail["name"] == "meter_2"
    assert detail["value"] == -1
    assert detail["success"] is False
    assert detail["retry_count"] == 3
    assert detail["error"] == "timeout"
    assert detail["format"] == "float32"


def test_detail_unknown_id():
    body = request(make_server(), "/api/collect/v1/meters/42/detail")
    assert body["result"] == -1
    assert body["message"] is None


def test_health():
    stats = {"status": "polling", "reconnect_failure_count": 0}
    body = request(make_server(stats), "/health")

    assert body["status"] == "healthy"
    assert body["modbus_status"] == "disconnected"
    assert body["devices"] == 4
    assert body["snapshot_version"] == 1
    assert body["poller"] == stats


def test_health_reports_stopped_poller():
    body = request(make_server({"status": "stopped"}), "/health")
    assert body["status"] == "unhealthy"


def test_custom_routes():
    server = make_server()
    server.settings = HttpSettings(
        value_precision=1,
        routes=HttpRoutes(
            all="/api/collect/v1/waterMeter/totalT/all",
            single="/api/collect/v1/waterMeter/totalT/{id}",
            detail="/api/collect/v1/waterMeter/totalT/{id}/detail",
        ),
    )

    body = request(server, "/api/collect/v1/waterMeter/totalT/all")
    assert body["message"][0] == 12.3
