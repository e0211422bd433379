"""Shell text generation for configuration units and console commands.

Everything that ends up as shell source, either inside the bundle or typed
into the VM console, is assembled here. Interpolated values always go through
:func:`quote`, which rejects characters that would break the line-oriented
console channel and single-quotes the rest.
"""

from __future__ import annotations

import re
import shlex
import textwrap
from dataclasses import dataclass
from typing import List

from consoleboot.exceptions import ManagerError

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FORBIDDEN_CHARS = {"\n": "newline", "\r": "carriage return", "\x00": "NUL"}


def quote(value: str, label: str = "value") -> str:
    """Quote *value* for POSIX sh, refusing control characters."""
    for char, desc in _FORBIDDEN_CHARS.items():
        if char in value:
            raise ManagerError(f"{label} must not contain a {desc}")
    return shlex.quote(value)


class ShellScript:
    """Line-by-line builder for POSIX shell text."""

    def __init__(self, shebang: bool = True, errexit: bool = True, xtrace: bool = False) -> None:
        self._lines: List[str] = []
        if shebang:
            self._lines.append("#!/bin/sh")
        flags = ("e" if errexit else "") + ("x" if xtrace else "")
        if flags:
            self._lines.append(f"set -{flags}")

    def raw(self, text: str) -> "ShellScript":
        """Append trusted, literal shell text (may span lines)."""
        self._lines.extend(textwrap.dedent(text).strip("\n").splitlines())
        return self

    def blank(self) -> "ShellScript":
        self._lines.append("")
        return self

    def command(self, *argv: str) -> "ShellScript":
        """Append a simple command with every argument quoted."""
        if not argv:
            raise ValueError("command requires at least one argument")
        self._lines.append(" ".join(quote(arg, label=f"argument of {argv[0]}") for arg in argv))
        return self

    def assign(self, name: str, value: str) -> "ShellScript":
        if not _NAME_RE.match(name):
            raise ValueError(f"Invalid shell variable name: {name!r}")
        self._lines.append(f"{name}={quote(value, label=name)}")
        return self

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"


@dataclass(frozen=True)
class RemoteCapability:
    """What the VM must provide to turn the base64 line back into bytes.

    The minimal target has no ``base64`` utility, so decoding relies on a
    general-purpose interpreter plus one of its modules.
    """

    interpreter: str = "lua"
    module: str = "nixio"

    def decoder_program(self) -> str:
        return (
            f'require "{self.module}"; io.stdin:setvbuf "no"; '
            f"io.write({self.module}.bin.b64decode(io.read()));"
        )

    def render_decoder(self, program_path: str, output_path: str) -> ShellScript:
        """Console lines that install the decoder and start it reading stdin.

        The line after these is consumed by the interpreter, not the shell.
        Running them again overwrites the same files.
        """
        script = ShellScript(shebang=False, errexit=False)
        script.blank()
        script.raw(f"echo {quote(self.decoder_program())} > {quote(program_path)}")
        script.raw(f"{quote(self.interpreter)} {quote(program_path)} > {quote(output_path)}")
        return script
