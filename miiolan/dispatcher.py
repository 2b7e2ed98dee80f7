"""Request/response correlation over the connectionless miio exchange."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .crypto import DerivedKeys, MiioError
from .packet import DecodeError, Packet, decode_message, encode_request, verify_checksum
from .session import SessionState
from .transport import TransportError

SendFunc = Callable[[bytes], None]

CALL_TIMEOUT = 0.4
EXPIRY_INTERVAL = 0.01


class CallTimeout(MiioError, TimeoutError):
    """Raised when the device does not answer a call before its deadline."""


@dataclass
class PendingCall:
    message_id: int
    method: str
    issued_at: float
    deadline: float
    future: "Future[dict]" = field(default_factory=Future)


class RequestDispatcher:
    """Sends calls and resolves them from replies carrying the same ``id``.

    A pending call is removed from the table by exactly one party (reply,
    expiry or shutdown), and that party completes its future.
    """

    def __init__(
        self,
        session: SessionState,
        keys: DerivedKeys,
        send: SendFunc,
        *,
        default_timeout: float = CALL_TIMEOUT,
        check_checksum: bool = True,
        nested_array_fix: bool = True,
        logger: Optional[logging.Logger] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.keys = keys
        self._send = send
        self.default_timeout = default_timeout
        self.check_checksum = check_checksum
        self.nested_array_fix = nested_array_fix
        self.log = logger or logging.getLogger(__name__)
        self._monotonic = monotonic
        self._pending: Dict[int, PendingCall] = {}
        self._lock = threading.Lock()
        self._closed: Optional[MiioError] = None
        self._stopped = threading.Event()
        self._expiry_thread: Optional[threading.Thread] = None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, *, run_expiry: bool = True) -> None:
        self._closed = None
        self._stopped.clear()
        if run_expiry and self._expiry_thread is None:
            self._expiry_thread = threading.Thread(
                target=self._expiry_loop, name="miio-expiry", daemon=True
            )
            self._expiry_thread.start()

    def close(self, error: MiioError) -> None:
        self._closed = error
        self._stopped.set()
        self.fail_all(error)
        thread = self._expiry_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._expiry_thread = None

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    def submit(self, method: str, params: Any = None, timeout: Optional[float] = None) -> "Future[dict]":
        return self._submit(method, params, timeout).future

    def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> dict:
        """Send a call and block until its reply or deadline.

        Returns the decoded reply document; raises :class:`CallTimeout` when
        no reply arrives in time.
        """

        pending = self._submit(method, params, timeout)
        try:
            return pending.future.result(timeout=pending.deadline - pending.issued_at)
        except FutureTimeout:
            self._expire_call(pending.message_id)
            return pending.future.result()

    def _submit(self, method: str, params: Any, timeout: Optional[float]) -> PendingCall:
        if self._closed is not None:
            raise self._closed
        if timeout is None:
            timeout = self.default_timeout
        message_id = self.session.next_message_id()
        unknown, serial, stamp = self.session.header_fields()
        raw = encode_request(
            method,
            params,
            message_id,
            self.keys,
            serial=serial,
            stamp=stamp,
            unknown=unknown,
            nested_array_fix=self.nested_array_fix,
        )
        now = self._monotonic()
        pending = PendingCall(
            message_id=message_id, method=method, issued_at=now, deadline=now + timeout
        )
        with self._lock:
            self._pending[message_id] = pending
        self.log.debug("Send >>> %s (id=%d)", method, message_id)
        try:
            self._send(raw)
        except TransportError as exc:
            with self._lock:
                self._pending.pop(message_id, None)
            pending.future.set_exception(exc)
        return pending

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------
    def handle_packet(self, packet: Packet) -> bool:
        """Resolve the pending call matching a reply packet.

        Returns True when a call was resolved.  Undecodable replies and
        replies for unknown ids are logged and dropped.
        """

        if self.check_checksum and not verify_checksum(packet, self.keys):
            self.log.warning("Dropping reply with bad checksum")
            return False
        try:
            message = decode_message(packet, self.keys)
        except DecodeError as exc:
            self.log.warning("Dropping undecodable reply: %s", exc)
            return False
        self.log.debug("Receive <<< %s", message)
        message_id = message.get("id")
        if not isinstance(message_id, int) or isinstance(message_id, bool):
            self.log.warning("Dropping reply without a message id")
            return False
        with self._lock:
            pending = self._pending.pop(message_id, None)
        if pending is None:
            self.log.debug("No pending call for reply id %d", message_id)
            return False
        if not pending.future.cancelled():
            pending.future.set_result(message)
        return True

    # ------------------------------------------------------------------
    # Expiry and shutdown
    # ------------------------------------------------------------------
    def expire(self) -> int:
        now = self._monotonic()
        with self._lock:
            expired: List[PendingCall] = [
                pending for pending in self._pending.values() if pending.deadline <= now
            ]
            for pending in expired:
                del self._pending[pending.message_id]
        for pending in expired:
            self._fail_timeout(pending)
        return len(expired)

    def fail_all(self, error: BaseException) -> None:
        with self._lock:
            pending_calls = list(self._pending.values())
            self._pending.clear()
        for pending in pending_calls:
            if not pending.future.cancelled():
                pending.future.set_exception(error)

    def _expire_call(self, message_id: int) -> None:
        with self._lock:
            pending = self._pending.pop(message_id, None)
        if pending is not None:
            self._fail_timeout(pending)

    def _fail_timeout(self, pending: PendingCall) -> None:
        self.log.debug("Call %s (id=%d) timed out", pending.method, pending.message_id)
        if pending.future.cancelled():
            return
        pending.future.set_exception(
            CallTimeout(f"No reply to {pending.method} (id={pending.message_id})")
        )

    def _expiry_loop(self) -> None:
        while not self._stopped.wait(EXPIRY_INTERVAL):
            try:
                self.expire()
            except Exception:
                self.log.exception("Expiry sweep failed")
