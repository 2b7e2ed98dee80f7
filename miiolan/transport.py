"""Non-blocking UDP transport with a background receive thread."""
from __future__ import annotations

import logging
import os
import socket
import threading
import time
from typing import Callable, Optional, Tuple

from .crypto import MiioError
from .packet import MAX_DATAGRAM

Address = Tuple[str, int]
DatagramHandler = Callable[[bytes, Address], None]
ErrorHandler = Callable[["TransportError"], None]

POLL_INTERVAL = 0.01
SIO_UDP_CONNRESET = 0x9800000C


class BindError(MiioError):
    """Raised when the local UDP port cannot be bound."""


class TransportError(MiioError):
    """Raised when the socket fails after it was bound."""


class UDPTransport:
    """UDP socket talking to a single device.

    Datagrams from any other address are ignored.  A socket failure while
    running is reported once through the error handler and ends the loop.
    """

    def __init__(
        self,
        remote: Address,
        *,
        local_host: str = "0.0.0.0",
        local_port: int = 54321,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.remote = remote
        self.local_host = local_host
        self.local_port = local_port
        self.log = logger or logging.getLogger(__name__)
        self.socket: Optional[socket.socket] = None
        self._running = threading.Event()
        self._recv_thread: Optional[threading.Thread] = None
        self._handler: Optional[DatagramHandler] = None
        self._error_handler: Optional[ErrorHandler] = None

    @property
    def local_address(self) -> Address:
        if self.socket is None:
            raise TransportError("Transport is not open")
        return self.socket.getsockname()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def open(self) -> None:
        if self.socket is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.local_host, self.local_port))
        except OSError as exc:
            sock.close()
            raise BindError(
                f"Cannot open UDP port {self.local_port}, make sure it is not in use: {exc}"
            ) from exc
        sock.setblocking(False)
        if os.name == "nt":
            # Stop ICMP port-unreachable from surfacing as recv errors on Windows
            try:
                sock.ioctl(SIO_UDP_CONNRESET, b"\x00\x00\x00\x00")
            except (AttributeError, OSError, ValueError):
                self.log.debug("SIO_UDP_CONNRESET not supported")
        self.socket = sock
        self.log.debug("UDP transport bound on %s:%s", *sock.getsockname())

    def start(self, handler: DatagramHandler, error_handler: Optional[ErrorHandler] = None) -> None:
        if self.socket is None:
            raise TransportError("Transport must be opened before starting")
        if self._running.is_set():
            return
        self._handler = handler
        self._error_handler = error_handler
        self._running.set()
        self._recv_thread = threading.Thread(
            target=self._recv_loop, name="miio-recv", daemon=True
        )
        self._recv_thread.start()

    def send(self, data: bytes) -> None:
        sock = self.socket
        if sock is None:
            raise TransportError("Transport is closed")
        try:
            sock.sendto(data, self.remote)
        except OSError as exc:
            raise TransportError(f"Cannot send to {self.remote[0]}:{self.remote[1]}: {exc}") from exc
        self.log.debug("Send >>> %s", data.hex())

    def close(self) -> None:
        self._running.clear()
        thread = self._recv_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._recv_thread = None
        sock = self.socket
        self.socket = None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                self.log.debug("Error while closing socket", exc_info=True)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------
    def _recv_loop(self) -> None:
        while self._running.is_set():
            sock = self.socket
            if sock is None:
                break
            try:
                data, addr = sock.recvfrom(MAX_DATAGRAM)
            except BlockingIOError:
                time.sleep(POLL_INTERVAL)
                continue
            except ConnectionResetError:
                continue
            except OSError as exc:
                if self._running.is_set():
                    self._fail(TransportError(f"UDP error: {exc}"))
                break
            if addr[0] != self.remote[0] or addr[1] != self.remote[1]:
                self.log.debug("Ignoring datagram from %s:%s", *addr[:2])
                continue
            self.log.debug("Receive <<< %s", data.hex())
            try:
                self._handler(data, addr)
            except Exception:
                self.log.exception("Datagram handler failed")

    def _fail(self, error: TransportError) -> None:
        self.log.error("%s", error)
        self._running.clear()
        if self._error_handler is not None:
            self._error_handler(error)
