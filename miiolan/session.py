"""Mutable per-session state shared by the handshake and the dispatcher."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .packet import UNSET_FIELD, Packet

Clock = Callable[[], float]


@dataclass
class SessionState:
    """Header values learned from the device plus the outgoing id counter.

    All mutation goes through the methods below, which hold ``lock``.
    """

    clock: Clock = time.time
    connected: bool = False
    serial: bytes = UNSET_FIELD
    unknown: bytes = UNSET_FIELD
    clock_offset: int = 0
    message_counter: int = 1
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def now(self) -> int:
        return int(self.clock())

    def next_message_id(self) -> int:
        with self.lock:
            message_id = self.message_counter
            self.message_counter += 1
            return message_id

    def header_fields(self) -> tuple[bytes, bytes, int]:
        """Return ``(unknown, serial, stamp)`` for the next outgoing packet."""
        with self.lock:
            stamp = (self.now() + self.clock_offset) & 0xFFFFFFFF
            return self.unknown, self.serial, stamp

    def apply_hello(self, packet: Packet) -> bool:
        """Record serial and clock from a probe reply.

        Returns True when this reply moved the session to connected.
        """

        with self.lock:
            self.serial = packet.serial
            self.unknown = packet.unknown
            self.clock_offset = packet.stamp - self.now()
            newly_connected = not self.connected
            self.connected = True
            return newly_connected

    def mark_disconnected(self) -> bool:
        with self.lock:
            was_connected = self.connected
            self.connected = False
            return was_connected
