"""Background polling of the active input.

The coordinator asks the KVM for its active input on a fixed interval and
publishes changes through callbacks. A user-initiated switch arms a short
pending window: until the device reports the requested input (or the window
expires) polls that still show another input are ignored, so the UI does not
flicker back to the old port while the switch settles.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .exceptions import BadArgumentError, TESmartError
from .protocol import MAX_INPUT, MIN_INPUT

LOGGER = logging.getLogger(__name__)

VERIFY_ATTEMPTS = 2
VERIFY_SPACING = 0.09

ActiveCallback = Callable[[int], None]
StatusCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]


class PendingSwitch:
    """Intent plus deadline recorded when the user asks for an input."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._port = 0
        self._deadline = 0.0

    def begin(self, port: int, duration: float) -> None:
        with self._lock:
            self._port = port
            self._deadline = self._clock() + duration

    def clear(self) -> None:
        with self._lock:
            self._port = 0
            self._deadline = 0.0

    @property
    def port(self) -> int:
        """Intended input while the window is open, else 0."""
        with self._lock:
            return self._port if self._clock() < self._deadline else 0

    @property
    def active(self) -> bool:
        with self._lock:
            return self._clock() < self._deadline

    def should_ignore(self, polled: int) -> bool:
        """True while the window is open and the poll disagrees with the intent."""
        with self._lock:
            if self._clock() >= self._deadline:
                return False
            return polled != self._port

    def clear_if_match(self, polled: int) -> bool:
        with self._lock:
            if self._port and polled == self._port:
                self._port = 0
                self._deadline = 0.0
                return True
            return False


class PollingCoordinator:
    """Periodic active-input poller reconciled with user-initiated switches.

    Args:
        client: A TESmartKVM (or anything with get_active_input/set_input)
        interval: Seconds between polls
        suppress: Length of the pending window after switch_to, in seconds
        verify_after_set: Poll twice right after a switch to confirm it
        fast_mode: Skip verification and leave reconciliation to the poller
        on_active_changed: Called with the new input when it changes
        on_status: Called with human readable status lines
        on_error: Called with errors that deserve the user's attention
    """

    def __init__(
        self,
        client,
        interval: float = 1.0,
        suppress: float = 0.8,
        verify_after_set: bool = True,
        fast_mode: bool = False,
        on_active_changed: Optional[ActiveCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0 or suppress <= 0:
            raise ValueError("interval and suppress must be positive")
        self.client = client
        self.interval = interval
        self.suppress = suppress
        self.verify_after_set = verify_after_set
        self.fast_mode = fast_mode
        self.on_active_changed = on_active_changed
        self.on_status = on_status
        self.on_error = on_error

        self.pending = PendingSwitch(clock)
        self._tick_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._active = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, client, connection, **callbacks) -> "PollingCoordinator":
        """Build a coordinator from a config Connection's timing fields."""
        return cls(
            client,
            interval=connection.poll_interval,
            suppress=connection.switch_suppress,
            verify_after_set=connection.verify_after_set,
            fast_mode=connection.fast_mode,
            **callbacks,
        )

    @property
    def active_port(self) -> int:
        """Last published input, 0 before the first one."""
        with self._state_lock:
            return self._active

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ---- callbacks ----

    def _call(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.exception("callback %r failed", callback)

    def _status(self, message: str) -> None:
        self._call(self.on_status, message)

    def _publish_active(self, port: int) -> None:
        # Caller holds _state_lock so publications stay in order
        if port != self._active:
            self._active = port
            self._call(self.on_active_changed, port)

    def _accept_poll(self, port: int) -> bool:
        """Apply a polled value unless the pending window masks it."""
        with self._state_lock:
            if self.pending.should_ignore(port):
                LOGGER.debug("ignoring poll %d while switch to %d is pending", port, self.pending.port)
                return False
            self.pending.clear_if_match(port)
            self._publish_active(port)
            return True

    # ---- polling ----

    def start(self) -> None:
        """Start the background poller. The first poll happens immediately.

        If an earlier worker was told to stop but is still finishing its tick,
        this waits for it so only one worker ever polls.
        """
        thread = self._thread
        if thread is not None and thread.is_alive():
            if not self._stop.is_set():
                return
            thread.join()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop,), name="tesmart-poller", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Ask the poller to exit and wait for the current tick to finish.

        Safe to call from a callback running on the worker itself; the worker
        then exits after the current tick without being joined.
        """
        self._stop.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout)
        if not thread.is_alive():
            self._thread = None

    def _run(self, stop: threading.Event) -> None:
        next_tick = time.monotonic()
        while not stop.is_set():
            self.poll_once()
            next_tick += self.interval
            now = time.monotonic()
            if next_tick < now:
                # Overran: drop the ticks we missed instead of queueing them
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
            if stop.wait(next_tick - now):
                break

    def poll_once(self) -> Optional[int]:
        """Run one tick.

        Returns:
            The published input, or None if the tick errored, was suppressed
            or was dropped because another tick is still running
        """
        if not self._tick_lock.acquire(blocking=False):
            LOGGER.debug("tick dropped, previous one still running")
            return None
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> Optional[int]:
        try:
            port = self.client.get_active_input()
        except TESmartError as e:
            LOGGER.debug("poll failed: %s", e)
            self._status(f"Polling error: {e}")
            return None
        except Exception as e:
            LOGGER.exception("unexpected poll failure")
            self._call(self.on_error, e)
            return None

        if not self._accept_poll(port):
            return None
        self._status(f"Active: {port}")
        return port

    # ---- user-initiated switch ----

    def switch_to(self, port: int) -> bool:
        """Switch inputs on behalf of the user.

        The requested input is published straight away and the pending window
        keeps stale polls from undoing that until the device catches up.

        Returns:
            True if the command was sent, False if it failed (the error goes
            to on_error)

        Raises:
            BadArgumentError: If port is out of range
        """
        if isinstance(port, bool) or not isinstance(port, int) or not (MIN_INPUT <= port <= MAX_INPUT):
            raise BadArgumentError(
                f"Invalid input: {port!r}. Must be between {MIN_INPUT} and {MAX_INPUT}"
            )

        with self._state_lock:
            self.pending.begin(port, self.suppress)
            self._publish_active(port)

        try:
            self.client.set_input(port)
        except TESmartError as e:
            self.pending.clear()
            self._status("Switch failed")
            self._call(self.on_error, e)
            return False

        if self.fast_mode:
            self._status(f"Switched (fast) → {port}")
            return True

        if self.verify_after_set:
            if self._verify(port):
                self.pending.clear_if_match(port)
                self._status(f"Switched to input {port}")
            else:
                self._status("Switched (unverified) — will sync on next poll")
            return True

        self._status(f"Switched to input {port}")
        return True

    def _verify(self, port: int) -> bool:
        for _ in range(VERIFY_ATTEMPTS):
            time.sleep(VERIFY_SPACING)
            try:
                current = self.client.get_active_input()
            except TESmartError as e:
                LOGGER.debug("verification poll failed: %s", e)
                continue
            if current == port:
                return True
        return False
