"""Serial console channel over the QEMU chardev UNIX socket."""

from __future__ import annotations

import codecs
import errno
import selectors
import socket
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Optional

from consoleboot.constants import CONSOLE_POLL_INTERVAL, MAX_CONSOLE_LINE
from consoleboot.exceptions import BootTimeout, ChannelError, TransferTimeout
from consoleboot.utils import log

Tee = Callable[[bytes], None]


class Deadline:
    """One overall time budget shared by every wait of a protocol run."""

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.timeout = timeout
        self.expires_at = clock() + timeout
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        if self._cancelled.is_set():
            return 0.0
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class ConsoleChannel:
    """Line reader and single writer on the shared console stream.

    Every byte received is handed to ``tee`` (if any) before line splitting,
    so log mirrors see the full stream without taking lines from the reader.
    """

    def __init__(self, sock: socket.socket, tee: Optional[Tee] = None) -> None:
        self._sock = sock
        self._tee = tee
        self._selector = selectors.DefaultSelector()
        self._selector.register(sock, selectors.EVENT_READ)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._discarding = False
        self._lines: Deque[str] = deque()
        self._write_lock = threading.Lock()
        self._closed = False

    @classmethod
    def connect(
        cls,
        path: Path,
        deadline: Deadline,
        tee: Optional[Tee] = None,
        interval: float = 0.2,
        alive: Optional[Callable[[], bool]] = None,
    ) -> "ConsoleChannel":
        """Connect, retrying while QEMU has not created the socket yet.

        *alive* reports whether the process serving the socket still runs;
        once it returns False there is nothing left to wait for.
        """
        while True:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(str(path))
            except OSError as exc:
                sock.close()
                if exc.errno not in {errno.ENOENT, errno.ECONNREFUSED}:
                    raise ChannelError(f"Cannot connect to console {path}: {exc}") from exc
                if alive is not None and not alive():
                    raise ChannelError(f"VM process exited before console {path} became available")
                if deadline.expired():
                    raise BootTimeout(f"Console socket {path} did not become available")
                time.sleep(min(interval, deadline.remaining()))
                continue
            log("DEBUG", f"Connected to console {path}")
            return cls(sock, tee)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._selector.close()
        self._sock.close()

    def __enter__(self) -> "ConsoleChannel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read_line(self, deadline: Deadline) -> Optional[str]:
        """Return the next complete line, or None once the deadline is reached."""
        while not self._lines:
            remaining = deadline.remaining()
            if remaining <= 0:
                return None
            if self._closed:
                raise ChannelError("Console channel is closed")
            events = self._selector.select(timeout=min(remaining, CONSOLE_POLL_INTERVAL))
            if events:
                self._fill()
        return self._lines.popleft()

    def _fill(self) -> None:
        try:
            data = self._sock.recv(65536)
        except BlockingIOError:
            return
        except OSError as exc:
            raise ChannelError(f"Console read failed: {exc}") from exc
        if not data:
            raise ChannelError("Console closed by the VM")
        if self._tee is not None:
            self._tee(data)
        self._feed(self._decoder.decode(data))

    def _feed(self, text: str) -> None:
        parts = (self._pending + text).split("\n")
        self._pending = parts.pop()
        for part in parts:
            if self._discarding:
                self._discarding = False
                continue
            self._lines.append(part.rstrip("\r"))
        if len(self._pending) > MAX_CONSOLE_LINE:
            # The head of this line is gone, so it can no longer match anything.
            self._pending = ""
            self._discarding = True

    def write(self, text: str, deadline: Deadline) -> None:
        """Write *text* completely; only one writer may hold the channel."""
        if not self._write_lock.acquire(blocking=False):
            raise ChannelError("Console channel already has an active writer")
        try:
            remaining = deadline.remaining()
            if remaining <= 0:
                raise TransferTimeout("Deadline reached before the configuration was sent")
            self._sock.settimeout(remaining)
            try:
                self._sock.sendall(text.encode("utf-8"))
            except socket.timeout as exc:
                raise TransferTimeout("Timed out writing to the console") from exc
            except OSError as exc:
                raise ChannelError(f"Console write failed: {exc}") from exc
        finally:
            self._write_lock.release()
