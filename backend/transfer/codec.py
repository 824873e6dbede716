"""
Wire codec for the two frame kinds carried on the transfer port.

Every connection carries exactly one frame. The first item is always a
length-prefixed UTF-8 string:

    [2-byte big-endian length][UTF-8 bytes]

If the string starts with HANDSHAKE_PREFIX the remainder is the client's
IPv4 address and nothing else follows. Otherwise the string is a file name,
followed by an 8-byte big-endian signed size and exactly that many raw bytes.
"""

import asyncio
import struct

from pydantic import ValidationError

from config import HANDSHAKE_PREFIX
from transfer.errors import MalformedFrame
from transfer.models import FileHeader, Handshake

LENGTH_FORMAT = "!H"
LENGTH_SIZE = struct.calcsize(LENGTH_FORMAT)
INT64_FORMAT = "!q"
INT64_SIZE = struct.calcsize(INT64_FORMAT)
MAX_STRING_BYTES = 0xFFFF


def encode_string(s: str) -> bytes:
    """Length-prefix the UTF-8 encoding of `s`."""
    data = s.encode("utf-8")
    if len(data) > MAX_STRING_BYTES:
        raise MalformedFrame(f"String too long for frame: {len(data)} bytes")
    return struct.pack(LENGTH_FORMAT, len(data)) + data


def encode_int64(n: int) -> bytes:
    try:
        return struct.pack(INT64_FORMAT, n)
    except struct.error as e:
        raise MalformedFrame(f"Value out of int64 range: {n}") from e


def write_string(sink, s: str) -> None:
    sink.write(encode_string(s))


def write_int64(sink, n: int) -> None:
    sink.write(encode_int64(n))


async def _read_exactly(reader: asyncio.StreamReader, n: int, what: str) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise MalformedFrame(
            f"Truncated {what}: got {len(e.partial)} of {n} bytes"
        ) from e


async def read_string(reader: asyncio.StreamReader) -> str:
    header = await _read_exactly(reader, LENGTH_SIZE, "string length")
    (length,) = struct.unpack(LENGTH_FORMAT, header)
    data = await _read_exactly(reader, length, "string body") if length else b""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedFrame(f"String is not valid UTF-8: {e}") from e


async def read_int64(reader: asyncio.StreamReader) -> int:
    data = await _read_exactly(reader, INT64_SIZE, "int64")
    return struct.unpack(INT64_FORMAT, data)[0]


# --- Frames ---

def encode_handshake(address: str) -> bytes:
    return encode_string(f"{HANDSHAKE_PREFIX}{address}")


def encode_file_header(name: str, size: int) -> bytes:
    validate_file_name(name)
    if size < 0:
        raise MalformedFrame(f"Negative file size: {size}")
    return encode_string(name) + encode_int64(size)


def parse_handshake(text: str) -> Handshake:
    """Parse the first string of a handshake frame."""
    if not text.startswith(HANDSHAKE_PREFIX):
        raise MalformedFrame(f"Missing handshake prefix: {text!r}")
    suffix = text[len(HANDSHAKE_PREFIX):]
    try:
        return Handshake(address=suffix)
    except ValidationError as e:
        raise MalformedFrame(f"Invalid handshake address: {suffix!r}") from e


def validate_file_name(name: str) -> None:
    """Reject names the receiving side could not store as a plain file."""
    if name in ("", ".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise MalformedFrame(f"Invalid file name: {name!r}")


async def read_frame(reader: asyncio.StreamReader) -> Handshake | FileHeader:
    """
    Read one frame header from the connection.

    For a FileHeader the body is left unread on `reader`.
    """
    first = await read_string(reader)
    if first.startswith(HANDSHAKE_PREFIX):
        return parse_handshake(first)

    validate_file_name(first)
    size = await read_int64(reader)
    if size < 0:
        raise MalformedFrame(f"Negative file size: {size}")
    return FileHeader(name=first, size=size)
