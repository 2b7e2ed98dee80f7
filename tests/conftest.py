"""Shared fixtures: a token, its keys and a loopback fake device."""

import json
import socket
import struct
import threading
import time

import pytest

from miiolan.crypto import derive_keys
from miiolan.packet import HEADER_SIZE, MAGIC, decode, decrypt_body, encode_packet

TOKEN_HEX = "000102030405060708090a0b0c0d0e0f"
DEVICE_SERIAL = bytes.fromhex("0badcafe")
DEVICE_UNKNOWN = bytes(4)


def hello_packet(serial=DEVICE_SERIAL, stamp=1000, unknown=DEVICE_UNKNOWN):
    return struct.pack("!HH4s4sI", MAGIC, HEADER_SIZE, unknown, serial, stamp) + b"\xff" * 16


def reply_packet(keys, document, *, serial=DEVICE_SERIAL, stamp=1000, terminator=True):
    payload = json.dumps(document).encode("utf-8")
    if terminator:
        payload += b"\x00"
    return encode_packet(payload, keys, unknown=DEVICE_UNKNOWN, serial=serial, stamp=stamp)


class ManualClock:
    def __init__(self, start=100.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


class FakeDevice:
    """UDP responder speaking just enough miio for the client tests."""

    def __init__(self, keys, *, clock_offset=0):
        self.keys = keys
        self.clock_offset = clock_offset
        self.answer_probes = True
        self.answer_calls = True
        self.probes = 0
        self.requests = []
        self.request_packets = []
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.bind(("127.0.0.1", 0))
        self.socket.settimeout(0.05)
        self.address = self.socket.getsockname()
        self.peer = None
        self._running = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)

    @property
    def port(self):
        return self.address[1]

    def device_time(self):
        return int(time.time()) + self.clock_offset

    def start(self):
        self._running.set()
        self._thread.start()

    def stop(self):
        self._running.clear()
        self._thread.join(timeout=1.0)
        self.socket.close()

    def send_raw(self, data):
        self.socket.sendto(data, self.peer)

    def reply(self, document):
        self.send_raw(reply_packet(self.keys, document, stamp=self.device_time()))

    def result_for(self, request):
        return {"id": request["id"], "result": ["ok", request["method"]]}

    def _loop(self):
        while self._running.is_set():
            try:
                data, addr = self.socket.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            self.peer = addr
            if len(data) == HEADER_SIZE:
                self.probes += 1
                if self.answer_probes:
                    self.send_raw(hello_packet(stamp=self.device_time()))
                continue
            packet = decode(data)
            request = json.loads(decrypt_body(packet, self.keys))
            self.request_packets.append(packet)
            self.requests.append(request)
            if self.answer_calls:
                self.reply(self.result_for(request))


@pytest.fixture
def keys():
    return derive_keys(TOKEN_HEX)


@pytest.fixture
def device(keys):
    fake = FakeDevice(keys)
    fake.start()
    yield fake
    fake.stop()


def wait_for(predicate, timeout=2.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
