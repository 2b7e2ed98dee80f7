"""Discovery handshake, keepalive probes and connection-loss detection."""
from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional

from .packet import Packet, build_probe
from .session import SessionState
from .transport import TransportError

SendFunc = Callable[[bytes], None]
ConnectHandler = Callable[[], None]

KEEPALIVE_INTERVAL = 10.0
HELLO_TIMEOUT = 5.0
SESSION_TIMEOUT = 30.0
TICK_INTERVAL = 0.25


class ConnectionState(enum.Enum):
    INIT = "init"
    AWAITING_HELLO = "awaiting_hello"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class HandshakeManager:
    """Owns the connection state of a session.

    A probe goes out on start and again whenever the device has been silent
    for the keepalive interval (the hello timeout while still unconnected).
    Every received datagram resets that idle clock.  A connected session that
    stays silent for ``session_timeout`` falls back to awaiting a hello and
    reconnects on the next probe reply.
    """

    def __init__(
        self,
        session: SessionState,
        send: SendFunc,
        *,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        hello_timeout: float = HELLO_TIMEOUT,
        session_timeout: float = SESSION_TIMEOUT,
        logger: Optional[logging.Logger] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self._send = send
        self.keepalive_interval = keepalive_interval
        self.hello_timeout = hello_timeout
        self.session_timeout = session_timeout
        self.log = logger or logging.getLogger(__name__)
        self._monotonic = monotonic
        self._state = ConnectionState.INIT
        self._state_lock = threading.Lock()
        self._connected_event = threading.Event()
        self._stopped = threading.Event()
        self._keepalive_thread: Optional[threading.Thread] = None
        self._connect_handler: Optional[ConnectHandler] = None
        self._disconnect_handler: Optional[ConnectHandler] = None
        self._last_rx = 0.0
        self._last_probe = 0.0
        self.probes_sent = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def register_connect_handler(self, handler: ConnectHandler) -> None:
        self._connect_handler = handler

    def register_disconnect_handler(self, handler: ConnectHandler) -> None:
        self._disconnect_handler = handler

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return self._connected_event.wait(timeout)

    def start(self, *, run_keepalive: bool = True) -> None:
        with self._state_lock:
            if self._state in (ConnectionState.AWAITING_HELLO, ConnectionState.CONNECTED):
                return
            self._state = ConnectionState.AWAITING_HELLO
        self._stopped.clear()
        self._last_rx = self._monotonic()
        self.send_probe()
        if run_keepalive:
            self._keepalive_thread = threading.Thread(
                target=self._keepalive_loop, name="miio-keepalive", daemon=True
            )
            self._keepalive_thread.start()

    def stop(self) -> None:
        with self._state_lock:
            self._state = ConnectionState.DISCONNECTED
        self._stopped.set()
        self._connected_event.clear()
        if self.session.mark_disconnected():
            self.log.info("Disconnected from device")
        thread = self._keepalive_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._keepalive_thread = None

    def touch(self) -> None:
        self._last_rx = self._monotonic()

    def handle_hello(self, packet: Packet) -> None:
        """Process a probe reply from the device."""

        with self._state_lock:
            if self._state not in (ConnectionState.AWAITING_HELLO, ConnectionState.CONNECTED):
                return
            self.touch()
            newly_connected = self.session.apply_hello(packet)
            self._state = ConnectionState.CONNECTED
        self.log.debug(
            "Receive <<< Helo <<< serial=%s stamp=%d offset=%d",
            packet.serial.hex(),
            packet.stamp,
            self.session.clock_offset,
        )
        if newly_connected:
            self.log.info("Connected to device %s", packet.serial.hex())
            self._connected_event.set()
            self._notify(self._connect_handler, "connect")

    def send_probe(self) -> bool:
        self._last_probe = self._monotonic()
        try:
            self._send(build_probe())
        except TransportError as exc:
            self.log.warning("Cannot send ping: %s", exc)
            return False
        self.probes_sent += 1
        return True

    def tick(self) -> None:
        """Run one keepalive decision; called periodically by the loop."""

        state = self._state
        if state not in (ConnectionState.AWAITING_HELLO, ConnectionState.CONNECTED):
            return
        now = self._monotonic()
        idle = now - self._last_rx
        if state is ConnectionState.CONNECTED and idle >= self.session_timeout:
            self._lose_connection(idle)
            state = ConnectionState.AWAITING_HELLO
        interval = (
            self.keepalive_interval
            if state is ConnectionState.CONNECTED
            else self.hello_timeout
        )
        if idle >= interval and now - self._last_probe >= interval:
            self.send_probe()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _lose_connection(self, idle: float) -> None:
        with self._state_lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            self._state = ConnectionState.AWAITING_HELLO
        self._connected_event.clear()
        self.session.mark_disconnected()
        self.log.warning("No reply from device for %.1fs, connection lost", idle)
        self._notify(self._disconnect_handler, "disconnect")

    def _notify(self, handler: Optional[ConnectHandler], event: str) -> None:
        # Handlers get their own thread; they may block on calls.
        if handler is None:
            return
        threading.Thread(
            target=self._run_handler, args=(handler, event), name=f"miio-{event}", daemon=True
        ).start()

    def _run_handler(self, handler: ConnectHandler, event: str) -> None:
        try:
            handler()
        except Exception:
            self.log.exception("%s handler failed", event.capitalize())

    def _keepalive_loop(self) -> None:
        while not self._stopped.wait(TICK_INTERVAL):
            try:
                self.tick()
            except Exception:
                self.log.exception("Keepalive tick failed")
