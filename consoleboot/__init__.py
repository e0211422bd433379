"""consoleboot package."""

__all__ = [
    "channel",
    "cli",
    "config",
    "constants",
    "defaults",
    "exceptions",
    "gate",
    "models",
    "packager",
    "protocol",
    "runtime",
    "script",
    "utils",
    "vm",
]
