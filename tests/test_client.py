"""End-to-end tests for MiioClient against a loopback fake device."""

import json
import socket
import threading

import pytest

from miiolan import (
    BindError,
    CallTimeout,
    ClientConfig,
    ConfigError,
    ConnectionState,
    MiioClient,
    TransportError,
)
from miiolan.client import main, parse_params
from miiolan.packet import decode

from conftest import TOKEN_HEX, FakeDevice, hello_packet, reply_packet, wait_for


def make_client(device, **overrides):
    options = dict(
        ip="127.0.0.1",
        token=TOKEN_HEX,
        port=device.port,
        local_port=0,
        local_host="127.0.0.1",
    )
    options.update(overrides)
    return MiioClient(ClientConfig(**options))


@pytest.fixture
def client(device):
    miio = make_client(device)
    yield miio
    miio.stop()


class TestConnect:
    def test_handshake_connects(self, client, device):
        connected = threading.Event()
        client.register_connect_handler(connected.set)

        client.start()

        assert connected.wait(2.0)
        assert client.wait_connected(0)
        assert client.connected
        assert client.state is ConnectionState.CONNECTED
        assert device.probes == 1

    def test_connect_handler_can_call_device(self, client, device):
        outcome = {}
        done = threading.Event()

        def on_connect():
            try:
                outcome["reply"] = client.call("get_prop", ["power"], timeout=2.0)
            except Exception as exc:
                outcome["error"] = exc
            done.set()

        client.register_connect_handler(on_connect)
        client.start()

        assert done.wait(3.0)
        assert outcome == {"reply": {"id": 1, "result": ["ok", "get_prop"]}}

    def test_clock_offset_applied_to_requests(self, keys):
        device = FakeDevice(keys, clock_offset=-86_400)
        device.start()
        try:
            with make_client(device) as client:
                assert client.wait_connected(2.0)
                client.call("get_prop", ["power"])
                sent = device.request_packets[-1]
                assert abs(sent.stamp - device.device_time()) <= 1
        finally:
            device.stop()

    def test_unanswered_probe_leaves_client_waiting(self, client, device):
        device.answer_probes = False
        client.start()
        assert not client.wait_connected(0.2)
        assert client.state is ConnectionState.AWAITING_HELLO


class TestCalls:
    def test_call_returns_reply(self, client, device):
        client.start()
        assert client.wait_connected(2.0)

        result = client.call("get_prop", ["power"])

        assert result == {"id": 1, "result": ["ok", "get_prop"]}
        assert device.requests == [{"id": 1, "method": "get_prop", "params": ["power"]}]

    def test_ids_increase_between_calls(self, client, device):
        client.start()
        assert client.wait_connected(2.0)
        client.call("get_prop", ["power"])
        client.call("set_power", ["on"])
        assert [request["id"] for request in device.requests] == [1, 2]

    def test_concurrent_submits(self, client, device):
        client.start()
        assert client.wait_connected(2.0)

        futures = [client.submit("get_prop", [str(i)], timeout=2.0) for i in range(5)]
        ids = [future.result(2.0)["id"] for future in futures]

        assert ids == [1, 2, 3, 4, 5]

    def test_timeout_and_stray_reply(self, client, device, keys):
        client.start()
        assert client.wait_connected(2.0)
        device.answer_calls = False

        with pytest.raises(CallTimeout):
            client.call("get_prop", ["power"])

        future = client.submit("get_prop", ["bright"], timeout=2.0)
        device.reply({"id": 1, "result": ["late"]})
        assert wait_for(lambda: len(device.requests) == 2)
        device.reply({"id": 2, "result": [80]})
        assert future.result(2.0)["result"] == [80]

    def test_hello_does_not_resolve_pending_call(self, client, device):
        client.start()
        assert client.wait_connected(2.0)
        device.answer_calls = False

        future = client.submit("get_prop", ["power"], timeout=2.0)
        assert wait_for(lambda: len(device.requests) == 1)
        device.send_raw(hello_packet(stamp=device.device_time()))
        device.send_raw(b"junk")

        assert not future.done()
        device.reply({"id": 1, "result": ["on"]})
        assert future.result(2.0)["result"] == ["on"]

    def test_call_before_start_fails(self, client):
        with pytest.raises(TransportError):
            client.call("get_prop", ["power"])


class TestFailures:
    def test_bad_token_is_config_error(self, device):
        with pytest.raises(ConfigError):
            make_client(device, token="abcd")

    def test_port_in_use_is_bind_error(self, device):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("127.0.0.1", 0))
        try:
            client = make_client(device, local_port=blocker.getsockname()[1])
            with pytest.raises(BindError):
                client.start()
            assert not client.running
        finally:
            blocker.close()

    def test_stop_fails_pending_calls(self, client, device):
        client.start()
        assert client.wait_connected(2.0)
        device.answer_calls = False
        future = client.submit("get_prop", ["power"], timeout=5.0)

        client.stop()

        with pytest.raises(TransportError):
            future.result(0)
        assert client.state is ConnectionState.DISCONNECTED
        assert not client.connected

    def test_transport_error_is_reported_once(self, client, device):
        errors = []
        client.register_error_handler(errors.append)
        client.start()
        assert client.wait_connected(2.0)
        device.answer_calls = False
        future = client.submit("get_prop", ["power"], timeout=5.0)

        failure = TransportError("UDP error: boom")
        client._handle_transport_error(failure)
        client._handle_transport_error(failure)

        assert errors == [failure]
        assert future.exception(0) is failure
        assert not client.running

    def test_client_can_restart(self, client, device):
        client.start()
        assert client.wait_connected(2.0)
        client.stop()

        client.start()
        assert client.wait_connected(2.0)
        assert client.call("get_prop", ["power"])["result"] == ["ok", "get_prop"]


class TestDatagramRouting:
    def test_reply_packet_never_touches_handshake(self, client, device, keys):
        device.answer_probes = False
        client.start()
        packet = reply_packet(keys, {"id": 1, "result": []})
        client._handle_datagram(packet, ("127.0.0.1", 1))
        assert client.state is ConnectionState.AWAITING_HELLO

    def test_malformed_datagram_is_dropped(self, client, caplog):
        client.start()
        client._handle_datagram(b"\x00" * 40, ("127.0.0.1", 1))
        assert "Dropping malformed datagram" in caplog.text

    def test_hello_is_decoded_as_probe(self):
        assert decode(hello_packet()).is_probe


class TestCommandLine:
    @pytest.mark.parametrize(
        "value,expected",
        [(None, None), ('["power"]', ["power"]), ("on", "on"), ('{"a": 1}', {"a": 1})],
    )
    def test_parse_params(self, value, expected):
        assert parse_params(value) == expected

    def test_main_prints_reply(self, device, capsys):
        code = main(
            [
                "--ip",
                "127.0.0.1",
                "--port",
                str(device.port),
                "--local-port",
                "0",
                "--token",
                TOKEN_HEX,
                "get_prop",
                '["power"]',
            ]
        )
        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"id": 1, "result": ["ok", "get_prop"]}

    def test_main_rejects_bad_token(self, device):
        assert main(["--ip", "127.0.0.1", "--token", "xyz", "--local-port", "0", "miIO.info"]) == 2
