"""Progress narration sink.

Build and rollout progress is streamed line by line to a caller-supplied text
writer. Lines are printed raw, without rich markup or highlighting, so build
output containing brackets passes through untouched.
"""

from __future__ import annotations

import codecs
import io
from typing import IO

from rich.console import Console


class DeployOutput:
    """Line-oriented writer for build and deploy progress.

    When constructed without a writer every line is discarded.
    """

    def __init__(self, writer: IO[str] | None = None) -> None:
        self.writer = writer
        self.console: Console | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        if writer is not None:
            self.console = Console(
                file=writer,
                soft_wrap=True,
                color_system=None,
                force_terminal=False,
                emoji=False,
                highlight=False,
                markup=False,
            )

    def print(self, msg: str = "") -> None:
        if self.console is None:
            return
        self.console.print(msg, markup=False, highlight=False)

    def write_raw(self, data: bytes, *, final: bool = False) -> None:
        """Pass container output straight through to the writer.

        A multibyte character split across writes is held back until the
        rest of it arrives; ``final`` flushes whatever is left.
        """
        if self.writer is None:
            return
        text = self._decoder.decode(data, final=final)
        if text:
            self.writer.write(text)
            self.writer.flush()

    def as_binary(self) -> IO[bytes]:
        """A binary file object forwarding writes to this output.

        Closing it flushes a trailing partial character.
        """
        return _BinarySink(self)


class _BinarySink(io.RawIOBase):
    def __init__(self, output: DeployOutput) -> None:
        self._output = output

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        chunk = bytes(data)
        self._output.write_raw(chunk)
        return len(chunk)

    def close(self) -> None:
        if not self.closed:
            self._output.write_raw(b"", final=True)
        super().close()
