"""
Transfer Framing

Design Decision: Wire Layout
============================

Options Considered:
1. Newline-delimited text
   - Easy to debug
   - Breaks on filenames containing newlines

2. Fixed-size padded fields
   - No length parsing
   - Wastes bytes, caps filename length arbitrarily

3. Length-prefixed strings + raw sizes
   - Unambiguous for arbitrary bytes
   - One extra read per string

Decision: Length-prefixed strings, 4-byte sizes, unframed chunks
- Every integer is an unsigned 32-bit big-endian (network order) value
- Payload chunks carry no prefix; the receiver counts bytes against size

Layout:
```
string  := length (4B) | bytes[length]
command := string                  "Upload" | "Download" | "Quit"
header  := filename (string) | size (4B)
payload := chunk* where sum(len(chunk)) == size, len(chunk) <= chunk_size
```

Size 0xFFFFFFFF is reserved: the server sends it instead of a real size
when a requested download does not exist.

Nothing in this module performs I/O.
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from .errors import ProtocolMismatch

# 4096 bytes per chunk on the wire
DEFAULT_CHUNK_SIZE = 4096

SIZE_FORMAT = '>I'
SIZE_LENGTH = struct.calcsize(SIZE_FORMAT)

# Reserved size value: requested file does not exist
NOT_FOUND = 0xFFFFFFFF
MAX_SIZE = NOT_FOUND - 1

MAX_COMMAND_LENGTH = 16
MAX_FILENAME_LENGTH = 4096


class Command(Enum):
    """First token of every exchange."""
    UPLOAD = "Upload"
    DOWNLOAD = "Download"
    QUIT = "Quit"


@dataclass(frozen=True)
class TransferHeader:
    """Filename and exact payload length of an upload."""
    filename: str
    size: int


# === Integers ===

def encode_size(size: int) -> bytes:
    """Encode a payload size (or NOT_FOUND) as 4 big-endian bytes."""
    if not 0 <= size <= NOT_FOUND:
        raise ValueError(f"Size out of range: {size}")
    return struct.pack(SIZE_FORMAT, size)


def decode_size(raw: bytes) -> int:
    """Decode a 4-byte big-endian size field."""
    if len(raw) != SIZE_LENGTH:
        raise ProtocolMismatch(f"Size field must be {SIZE_LENGTH} bytes, got {len(raw)}")
    return struct.unpack(SIZE_FORMAT, raw)[0]


def encode_length(length: int, limit: int) -> bytes:
    """Encode a string length prefix."""
    if not 0 < length <= limit:
        raise ValueError(f"String length {length} outside 1..{limit}")
    return struct.pack(SIZE_FORMAT, length)


def decode_length(raw: bytes, limit: int) -> int:
    """
    Decode a string length prefix.

    Raises:
        ProtocolMismatch: if the length is zero or above limit
    """
    length = decode_size(raw)
    if not 0 < length <= limit:
        raise ProtocolMismatch(f"String length {length} outside 1..{limit}")
    return length


# === Commands ===

def encode_command(command: Command) -> bytes:
    """Encode a command as its length-prefixed literal text."""
    token = command.value.encode('ascii')
    return encode_length(len(token), MAX_COMMAND_LENGTH) + token


def decode_command(token: bytes) -> Command:
    """
    Decode a command token (without its length prefix).

    Matching is exact and case-sensitive.
    """
    try:
        return Command(token.decode('ascii'))
    except (UnicodeDecodeError, ValueError):
        raise ProtocolMismatch(f"Unknown command token: {token!r}") from None


# === Filenames ===

def encode_filename(filename: str) -> bytes:
    """Encode a filename as a length-prefixed string."""
    raw = filename.encode('utf-8', 'surrogateescape')
    if not 0 < len(raw) <= MAX_FILENAME_LENGTH:
        raise ValueError(f"Filename length {len(raw)} outside 1..{MAX_FILENAME_LENGTH}")
    return encode_length(len(raw), MAX_FILENAME_LENGTH) + raw


def decode_filename(raw: bytes) -> str:
    """Decode filename bytes (without length prefix); arbitrary bytes round trip."""
    if not raw:
        raise ProtocolMismatch("Empty filename")
    return raw.decode('utf-8', 'surrogateescape')


def encode_header(header: TransferHeader) -> bytes:
    """Encode an upload header: filename followed by size."""
    if header.size > MAX_SIZE:
        raise ValueError(f"Payload too large for a 32-bit size field: {header.size}")
    return encode_filename(header.filename) + encode_size(header.size)


# === Chunks ===

def chunk_count(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Number of chunks a payload of the given size is split into."""
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive: {chunk_size}")
    return (size + chunk_size - 1) // chunk_size


def chunk_lengths(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[int]:
    """
    Yield the length of every chunk of a payload.

    All chunks are chunk_size long except possibly the last one.
    A zero-length payload yields nothing.
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive: {chunk_size}")
    remaining = size
    while remaining > 0:
        length = min(chunk_size, remaining)
        yield length
        remaining -= length


def iter_chunks(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Lazily split an in-memory payload into wire chunks."""
    offset = 0
    for length in chunk_lengths(len(data), chunk_size):
        yield data[offset:offset + length]
        offset += length
