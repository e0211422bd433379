"""Custom exceptions for consoleboot."""

from __future__ import annotations

from typing import Iterable, List


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ProtocolError(ManagerError):
    """Base class for failures of the config-over-console bootstrap."""

    summary = "VM configuration failed"


class PreconditionError(ProtocolError):
    """Configuration could not be staged; nothing was sent to the VM."""

    summary = "VM configuration could not be prepared"


class ChannelError(ProtocolError):
    """The serial console socket is unavailable or closed unexpectedly."""

    summary = "VM console channel lost"


class BootTimeout(ProtocolError):
    """The console prompt was not seen before the deadline."""

    summary = "VM did not reach the console prompt in time"


class TransferTimeout(ProtocolError):
    """No result marker line was seen before the deadline."""

    summary = "VM configuration result not received in time"


class RemoteScriptFailure(ProtocolError):
    """The VM reported that a configuration unit failed."""

    summary = "VM configuration scripts failed"

    def __init__(self, message: str, progress: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.progress: List[str] = list(progress)
