"""Wire codec for miio packets.

Every datagram starts with a fixed 32-byte header:

* ``magic`` (2 bytes, ``0x2131``) and ``length`` (2 bytes, header + body).
* ``unknown`` (4 bytes), echoed from the device, all ``0xFF`` in probes.
* ``serial`` (4 bytes), the device id learned from the probe reply.
* ``stamp`` (4 bytes), device clock in seconds.
* ``checksum`` (16 bytes), MD5 over the whole packet computed while the
  checksum field holds the token.

Probe and keepalive packets stop after the header.  Everything else carries
an AES-128-CBC encrypted UTF-8 JSON body.
"""
from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any

from .crypto import DerivedKeys, MiioError, decrypt, digests_equal, encrypt, md5

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAGIC = 0x2131
HEADER_SIZE = 32
CHECKSUM_OFFSET = 16
MAX_DATAGRAM = 0xFFFF

UNSET_FIELD = b"\xff\xff\xff\xff"
PAYLOAD_TERMINATOR = 0x00

_PREFIX = struct.Struct("!HH4s4sI")


class DecodeError(MiioError):
    """Raised when a datagram is not a well-formed miio packet."""


@dataclass(frozen=True)
class Packet:
    magic: int
    length: int
    unknown: bytes
    serial: bytes
    stamp: int
    checksum: bytes
    body: bytes = b""

    @property
    def is_probe(self) -> bool:
        return self.length == HEADER_SIZE

    @property
    def header(self) -> bytes:
        return (
            _PREFIX.pack(self.magic, self.length, self.unknown, self.serial, self.stamp)
            + self.checksum
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def params_omitted(params: Any) -> bool:
    if params is None or params == "":
        return True
    return isinstance(params, (list, tuple)) and len(params) == 1 and params[0] == ""


def build_message(
    message_id: int, method: str, params: Any = None, *, nested_array_fix: bool = True
) -> bytes:
    """Serialize a request as compact JSON.

    ``params`` is left out for ``None``, ``""`` and ``[""]``.  With
    *nested_array_fix* the first ``["[`` becomes ``[[`` and the first
    ``]"]`` becomes ``]]``, so params that arrive as a stringified inner
    array reach the device as a real nested array.
    """

    if not method:
        raise ValueError("Cannot build a message without a method")
    message: dict = {"id": message_id, "method": method}
    if not params_omitted(params):
        message["params"] = params
    text = json.dumps(message, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    if nested_array_fix:
        text = text.replace('["[', "[[", 1).replace(']"]', "]]", 1)
    return text.encode("utf-8")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def build_probe() -> bytes:
    """Discovery/keepalive probe: magic, length 0x20, everything else 0xFF."""
    return _PREFIX.pack(MAGIC, HEADER_SIZE, UNSET_FIELD, UNSET_FIELD, 0xFFFFFFFF) + b"\xff" * 16


def checksum_for(header_prefix: bytes, token: bytes, body: bytes) -> bytes:
    return md5(header_prefix + token + body)


def encode_packet(
    payload: bytes,
    keys: DerivedKeys,
    *,
    unknown: bytes = UNSET_FIELD,
    serial: bytes = UNSET_FIELD,
    stamp: int = 0,
) -> bytes:
    if len(unknown) != 4 or len(serial) != 4:
        raise ValueError("unknown and serial must be 4 bytes")
    body = encrypt(keys, payload)
    length = HEADER_SIZE + len(body)
    if length > MAX_DATAGRAM:
        raise ValueError("Payload too large for a single packet")
    prefix = _PREFIX.pack(MAGIC, length, unknown, serial, stamp & 0xFFFFFFFF)
    return prefix + checksum_for(prefix, keys.token, body) + body


def encode_request(
    method: str,
    params: Any,
    message_id: int,
    keys: DerivedKeys,
    *,
    serial: bytes = UNSET_FIELD,
    stamp: int = 0,
    unknown: bytes = UNSET_FIELD,
    nested_array_fix: bool = True,
) -> bytes:
    payload = build_message(message_id, method, params, nested_array_fix=nested_array_fix)
    return encode_packet(payload, keys, unknown=unknown, serial=serial, stamp=stamp)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(raw: bytes) -> Packet:
    if len(raw) < HEADER_SIZE:
        raise DecodeError(f"Datagram shorter than header ({len(raw)} bytes)")
    magic, length, unknown, serial, stamp = _PREFIX.unpack_from(raw)
    if magic != MAGIC:
        raise DecodeError(f"Bad magic 0x{magic:04x}")
    if length != len(raw):
        raise DecodeError(f"Length field {length} does not match datagram size {len(raw)}")
    return Packet(
        magic=magic,
        length=length,
        unknown=unknown,
        serial=serial,
        stamp=stamp,
        checksum=raw[CHECKSUM_OFFSET:HEADER_SIZE],
        body=raw[HEADER_SIZE:],
    )


def verify_checksum(packet: Packet, keys: DerivedKeys) -> bool:
    prefix = packet.header[:CHECKSUM_OFFSET]
    expected = checksum_for(prefix, keys.token, packet.body)
    return digests_equal(expected, packet.checksum)


def decrypt_body(packet: Packet, keys: DerivedKeys) -> str:
    """Decrypt the body and drop the NUL terminator devices append."""

    if not packet.body:
        raise DecodeError("Packet has no body")
    try:
        plaintext = decrypt(keys, packet.body)
    except ValueError as exc:
        raise DecodeError(f"Cannot decrypt body: {exc}") from exc
    if plaintext and plaintext[-1] == PAYLOAD_TERMINATOR:
        plaintext = plaintext[:-1]
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError("Decrypted body is not UTF-8") from exc


def decode_message(packet: Packet, keys: DerivedKeys) -> dict:
    text = decrypt_body(packet, keys)
    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError("Decrypted body is not JSON") from exc
    if not isinstance(message, dict):
        raise DecodeError("Decrypted body is not a JSON object")
    return message
