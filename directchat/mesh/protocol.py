"""Wire-level protocol for chat messages.

Every message is UTF-8 text terminated by a single ``\\n`` sent over a plain
TCP stream.  There is no length prefix, no version byte and no
acknowledgement.

Framing rules
-------------
- The sender appends exactly one ``\\n``.
- The receiver splits on ``\\n``; a ``\\r`` right before it is dropped.
- A final line without a terminator is still delivered.
- Text containing an embedded ``\\n`` arrives as two messages.  This is a
  known limitation of the format and is not escaped.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

DEFAULT_PORT = 8988
LINE_TERMINATOR = b"\n"
ENCODING = "utf-8"


def encode_line(text: str) -> bytes:
    """Encode *text* as one wire line."""
    return text.encode(ENCODING) + LINE_TERMINATOR


def decode_line(raw: bytes) -> str:
    """Decode one raw line (with or without its terminator)."""
    if raw.endswith(LINE_TERMINATOR):
        raw = raw[:-1]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode(ENCODING, errors="replace")


async def read_lines(reader: Any) -> AsyncIterator[str]:
    """Yield decoded lines from an ``asyncio.StreamReader`` until EOF.

    Connection errors propagate to the caller, which owns the socket.
    """
    while True:
        raw = await reader.readline()
        if not raw:
            return
        yield decode_line(raw)


def write_line(writer: Any, text: str) -> None:
    """Write one line to an ``asyncio.StreamWriter``."""
    writer.write(encode_line(text))
