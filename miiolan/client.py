"""miio device client."""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from .crypto import MiioError, derive_keys
from .dispatcher import CALL_TIMEOUT, RequestDispatcher
from .handshake import (
    HELLO_TIMEOUT,
    KEEPALIVE_INTERVAL,
    SESSION_TIMEOUT,
    ConnectionState,
    HandshakeManager,
)
from .packet import DecodeError, decode
from .session import SessionState
from .transport import TransportError, UDPTransport

DEFAULT_PORT = 54321

ErrorHandler = Callable[[MiioError], None]


@dataclass
class ClientConfig:
    ip: str
    token: Union[str, bytes]
    port: int = DEFAULT_PORT
    local_port: int = DEFAULT_PORT
    local_host: str = "0.0.0.0"
    keepalive_interval: float = KEEPALIVE_INTERVAL
    hello_timeout: float = HELLO_TIMEOUT
    session_timeout: float = SESSION_TIMEOUT
    call_timeout: float = CALL_TIMEOUT
    nested_array_fix: bool = True
    verify_checksum: bool = True


class MiioClient:
    """Session with one miio device over UDP.

    ``start()`` binds the local port and begins the handshake; the connect
    handler (or :meth:`wait_connected`) reports when the device answered.
    A socket error ends the session: pending calls fail, the error handler is
    told once, and the owner decides whether to build a new client.
    """

    def __init__(self, config: ClientConfig, logger: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.log = logger or logging.getLogger("miiolan")
        self.keys = derive_keys(config.token)
        self.session = SessionState()
        self.transport = UDPTransport(
            (config.ip, config.port),
            local_host=config.local_host,
            local_port=config.local_port,
            logger=self.log,
        )
        self.handshake = HandshakeManager(
            self.session,
            self.transport.send,
            keepalive_interval=config.keepalive_interval,
            hello_timeout=config.hello_timeout,
            session_timeout=config.session_timeout,
            logger=self.log,
        )
        self.dispatcher = RequestDispatcher(
            self.session,
            self.keys,
            self.transport.send,
            default_timeout=config.call_timeout,
            check_checksum=config.verify_checksum,
            nested_array_fix=config.nested_array_fix,
            logger=self.log,
        )
        self._running = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._error_handler: Optional[ErrorHandler] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._running.is_set():
            return
        self.transport.open()
        host, port = self.transport.local_address
        self.log.debug("server started on %s:%s", host, port)
        self._running.set()
        self.dispatcher.start()
        self.transport.start(self._handle_datagram, self._handle_transport_error)
        self.log.info("Connecting to %s:%s", self.config.ip, self.config.port)
        self.handshake.start()

    def stop(self) -> None:
        self._shutdown(TransportError("Client stopped"))

    def __enter__(self) -> "MiioClient":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    @property
    def connected(self) -> bool:
        return self.handshake.connected

    @property
    def state(self) -> ConnectionState:
        return self.handshake.state

    @property
    def local_address(self) -> Tuple[str, int]:
        return self.transport.local_address

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return self.handshake.wait_connected(timeout)

    def register_connect_handler(self, handler: Callable[[], None]) -> None:
        self.handshake.register_connect_handler(handler)

    def register_disconnect_handler(self, handler: Callable[[], None]) -> None:
        self.handshake.register_disconnect_handler(handler)

    def register_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handler = handler

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    def submit(self, method: str, params: Any = None, timeout: Optional[float] = None) -> "Future[dict]":
        self._ensure_running()
        return self.dispatcher.submit(method, params, timeout)

    def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> dict:
        self._ensure_running()
        return self.dispatcher.call(method, params, timeout)

    def _ensure_running(self) -> None:
        if not self._running.is_set():
            raise TransportError("Client is not running")

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------
    def _handle_datagram(self, data: bytes, address: Tuple[str, int]) -> None:
        self.handshake.touch()
        try:
            packet = decode(data)
        except DecodeError as exc:
            self.log.warning("Dropping malformed datagram from %s:%s: %s", address[0], address[1], exc)
            return
        if packet.is_probe:
            self.handshake.handle_hello(packet)
        else:
            self.dispatcher.handle_packet(packet)

    def _handle_transport_error(self, error: TransportError) -> None:
        if not self._shutdown(error):
            return
        if self._error_handler is not None:
            self._error_handler(error)

    def _shutdown(self, error: MiioError) -> bool:
        with self._shutdown_lock:
            if not self._running.is_set():
                return False
            self._running.clear()
        self.handshake.stop()
        self.dispatcher.close(error)
        self.transport.close()
        self.log.debug("Client stopped: %s", error)
        return True


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def parse_params(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def main(argv: Optional[list] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Send a single miio call to a device")
    parser.add_argument("--ip", required=True)
    parser.add_argument("--token", required=True, help="32 hex chars, or the 96-char wrapped form")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--local-port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--timeout", type=float, default=CALL_TIMEOUT)
    parser.add_argument("--connect-timeout", type=float, default=HELLO_TIMEOUT)
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("method")
    parser.add_argument("params", nargs="?", help="JSON encoded params")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )
    try:
        client = MiioClient(
            ClientConfig(
                ip=args.ip,
                token=args.token,
                port=args.port,
                local_port=args.local_port,
                call_timeout=args.timeout,
            )
        )
        client.start()
    except MiioError as exc:
        logging.error("%s", exc)
        return 2
    try:
        if not client.wait_connected(args.connect_timeout):
            logging.error("No handshake reply from %s:%s", args.ip, args.port)
            return 1
        result = client.call(args.method, parse_params(args.params))
    except MiioError as exc:
        logging.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        client.stop()
    print(json.dumps(result, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
