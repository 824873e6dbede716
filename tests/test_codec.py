"""Tests for the frame codec."""

import asyncio
import struct
from ipaddress import IPv4Address

import pytest

from transfer.codec import (
    encode_file_header,
    encode_handshake,
    encode_int64,
    encode_string,
    parse_handshake,
    read_frame,
    read_int64,
    read_string,
    write_string,
)
from transfer.errors import MalformedFrame
from transfer.models import FileHeader, Handshake


def make_reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class BytesSink:
    def __init__(self):
        self.data = b""

    def write(self, data: bytes) -> None:
        self.data += data


def test_string_is_length_prefixed_utf8():
    assert encode_string("abc") == b"\x00\x03abc"
    # Length counts bytes, not characters
    assert encode_string("é") == b"\x00\x02\xc3\xa9"


def test_write_string_goes_to_sink():
    sink = BytesSink()
    write_string(sink, "a.txt")
    assert sink.data == b"\x00\x05a.txt"


def test_string_too_long_is_rejected():
    with pytest.raises(MalformedFrame):
        encode_string("x" * 0x10000)


def test_int64_is_big_endian_signed():
    assert encode_int64(3) == b"\x00\x00\x00\x00\x00\x00\x00\x03"
    assert encode_int64(-1) == b"\xff" * 8


def test_handshake_encoding():
    assert encode_handshake("10.0.0.2") == encode_string("CLIENT_IP::10.0.0.2")


def test_file_header_rejects_negative_size():
    with pytest.raises(MalformedFrame):
        encode_file_header("a.txt", -1)


@pytest.mark.parametrize("name", ["", "..", "dir/a.txt", "a\\b.txt"])
def test_file_header_rejects_names_the_receiver_refuses(name):
    with pytest.raises(MalformedFrame):
        encode_file_header(name, 1)


@pytest.mark.asyncio
async def test_read_string_and_int64():
    reader = make_reader(encode_string("héllo") + encode_int64(2**40))
    assert await read_string(reader) == "héllo"
    assert await read_int64(reader) == 2**40


@pytest.mark.asyncio
async def test_read_string_truncated_body():
    reader = make_reader(b"\x00\x05ab")
    with pytest.raises(MalformedFrame):
        await read_string(reader)


@pytest.mark.asyncio
async def test_read_string_truncated_length():
    with pytest.raises(MalformedFrame):
        await read_string(make_reader(b"\x00"))


@pytest.mark.asyncio
async def test_read_string_invalid_utf8():
    with pytest.raises(MalformedFrame):
        await read_string(make_reader(b"\x00\x02\xff\xfe"))


def test_parse_handshake_address():
    frame = parse_handshake("CLIENT_IP::192.168.49.5")
    assert frame.address == IPv4Address("192.168.49.5")


@pytest.mark.parametrize(
    "text",
    [
        "CLIENT_IP::",
        "CLIENT_IP::not-an-ip",
        "CLIENT_IP::192.168.49",
        "CLIENT_IP::256.1.1.1",
        "CLIENT_IP::fe80::1",
    ],
)
def test_parse_handshake_rejects_bad_address(text):
    with pytest.raises(MalformedFrame):
        parse_handshake(text)


@pytest.mark.asyncio
async def test_read_frame_handshake():
    frame = await read_frame(make_reader(encode_handshake("10.0.0.2")))
    assert isinstance(frame, Handshake)
    assert str(frame.address) == "10.0.0.2"


@pytest.mark.asyncio
async def test_read_frame_file_header_leaves_body_unread():
    reader = make_reader(encode_file_header("a.txt", 3) + b"abc")
    frame = await read_frame(reader)
    assert frame == FileHeader(name="a.txt", size=3)
    assert await reader.read() == b"abc"


@pytest.mark.asyncio
async def test_read_frame_requires_size_after_name():
    with pytest.raises(MalformedFrame):
        await read_frame(make_reader(encode_string("a.txt") + b"\x00\x00"))


@pytest.mark.asyncio
async def test_read_frame_rejects_negative_size():
    data = encode_string("a.txt") + struct.pack("!q", -5)
    with pytest.raises(MalformedFrame):
        await read_frame(make_reader(data))


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "..", "dir/a.txt", "..\\a.txt"])
async def test_read_frame_rejects_path_like_names(name):
    data = encode_string(name) + encode_int64(0)
    with pytest.raises(MalformedFrame):
        await read_frame(make_reader(data))


@pytest.mark.asyncio
async def test_read_frame_bad_handshake_address():
    with pytest.raises(MalformedFrame):
        await read_frame(make_reader(encode_string("CLIENT_IP::nope")))
