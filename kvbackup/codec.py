"""
Compression container for stored entries.

Entries are gzip members (RFC 1952). The header carries the full source path
and the modification time floored to the second, so a blob is
self-describing even outside the store. The path is written as the raw
filesystem bytes, so names that are not valid UTF-8 or Latin-1 survive.
"""

import gzip
import io
import math
import os
import struct
import zlib
from dataclasses import dataclass
from typing import BinaryIO

from kvbackup.errors import CodecError

GZIP_MAGIC = b"\x1f\x8b"

# Header flag bits
FEXTRA = 0x04
FNAME = 0x08

# Unknown operating system, as written by Python's gzip module
_OS_UNKNOWN = 255

_CHUNK_SIZE = 64 * 1024

# The header time field is an unsigned 32-bit count of seconds
_MAX_HEADER_MTIME = 2**32


@dataclass
class Header:
    """Metadata decoded from a container's gzip header."""

    name: str
    mtime: int


def header_mtime(mtime: float) -> int:
    """Floor *mtime* to whole seconds, or 0 when it does not fit the header."""
    seconds = math.floor(mtime)
    if not 0 <= seconds < _MAX_HEADER_MTIME:
        return 0
    return seconds


def _extra_flags(level: int) -> int:
    if level == 9:
        return 2
    if level == 1:
        return 4
    return 0


def compress(stream: BinaryIO, name: str, mtime: float, level: int = 9) -> bytes:
    """
    Compress everything readable from *stream* into a gzip container.

    Args:
        stream: Binary file object positioned at the start of the content
        name: Original path, written into the header as is
        mtime: Modification time; see :func:`header_mtime`
        level: Compression level, 0 (store) to 9 (best)

    Returns:
        The complete container as bytes
    """
    if not 0 <= level <= 9:
        raise ValueError(f"invalid compression level: {level}")

    raw_name = os.fsencode(name).replace(b"\x00", b"")
    flags = FNAME if raw_name else 0

    buf = io.BytesIO()
    buf.write(GZIP_MAGIC)
    buf.write(
        struct.pack(
            "<BBIBB",
            zlib.DEFLATED,
            flags,
            header_mtime(mtime),
            _extra_flags(level),
            _OS_UNKNOWN,
        )
    )
    if raw_name:
        buf.write(raw_name + b"\x00")

    deflater = zlib.compressobj(level, zlib.DEFLATED, -zlib.MAX_WBITS)
    crc = 0
    size = 0
    while True:
        chunk = stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        crc = zlib.crc32(chunk, crc)
        size += len(chunk)
        buf.write(deflater.compress(chunk))
    buf.write(deflater.flush())
    buf.write(struct.pack("<II", crc, size & 0xFFFFFFFF))
    return buf.getvalue()


def decompress(blob: bytes) -> bytes:
    """Return the original bytes held in a container."""
    try:
        return gzip.decompress(blob)
    except (OSError, EOFError, zlib.error) as e:
        raise CodecError(f"corrupt container: {e}") from e


def read_header(blob: bytes) -> Header:
    """Decode the header of a container without touching the payload."""
    if len(blob) < 10 or blob[:2] != GZIP_MAGIC:
        raise CodecError("not a gzip container")

    method, flags, mtime = struct.unpack("<BBI", blob[2:8])
    if method != zlib.DEFLATED:
        raise CodecError(f"unknown compression method {method}")

    pos = 10
    if flags & FEXTRA:
        if len(blob) < pos + 2:
            raise CodecError("truncated header")
        (extra_len,) = struct.unpack("<H", blob[pos : pos + 2])
        pos += 2 + extra_len

    name = ""
    if flags & FNAME:
        end = blob.find(b"\x00", pos)
        if end < 0:
            raise CodecError("unterminated file name in header")
        name = os.fsdecode(blob[pos:end])

    return Header(name=name, mtime=mtime)
