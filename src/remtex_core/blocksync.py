"""Block synchronization stream for a file that is rewritten in place.

The Sender rereads the file in fixed-size blocks and emits only blocks whose
digest changed since they were last sent. The Receiver applies records at
their offsets and truncates on the terminating record.

Wire format, repeated until EOF:
    [Len(4) | Offset(8)] [Len(4) | Data(Len)]
An empty Data payload terminates: the receiver truncates at Offset.

This module is stdlib-only. Its source is installed verbatim as the helper
program in the remote working directory and run as a standalone script:
    python blocksync.py send PATH      (finalized by EOF on stdin)
    python blocksync.py receive PATH   (reads the stream on stdin)
"""
from __future__ import annotations

import hashlib
import struct
import sys
import threading
import time
from pathlib import Path
from typing import BinaryIO

LEN_FMT = ">I"
LEN_SIZE = 4
OFFSET_FMT = ">Q"
OFFSET_SIZE = 8

BLOCK_SIZE = 16 * 1024
SEND_DELAY = 0.1  # between sender passes

# Safety bound on a single data payload
MAX_RECORD_PAYLOAD = 64 * 1024 * 1024  # 64 MiB


class StreamError(ValueError):
    """Malformed or truncated block stream."""


def _digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()[:16]


def encode_record(offset: int, data: bytes) -> bytes:
    """Serialize one (offset, data) record pair."""
    off = struct.pack(OFFSET_FMT, offset)
    return (
        struct.pack(LEN_FMT, len(off)) + off
        + struct.pack(LEN_FMT, len(data)) + data
    )


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    buf = b""
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def read_record(stream: BinaryIO) -> tuple[int, bytes] | None:
    """Read one record pair. Returns None on clean end of stream."""
    header = _read_exact(stream, LEN_SIZE)
    if len(header) == 0:
        return None
    if len(header) < LEN_SIZE:
        raise StreamError("Truncated offset length header")
    (olen,) = struct.unpack(LEN_FMT, header)
    if olen != OFFSET_SIZE:
        raise StreamError(f"Bad offset field length {olen}")
    raw = _read_exact(stream, olen)
    if len(raw) != olen:
        raise StreamError("Torn offset field")
    (offset,) = struct.unpack(OFFSET_FMT, raw)

    header = _read_exact(stream, LEN_SIZE)
    if len(header) < LEN_SIZE:
        raise StreamError(f"Truncated data length header at offset {offset}")
    (dlen,) = struct.unpack(LEN_FMT, header)
    if dlen > MAX_RECORD_PAYLOAD:
        raise StreamError(f"Data payload size {dlen} exceeds limit {MAX_RECORD_PAYLOAD}")
    data = _read_exact(stream, dlen)
    if len(data) != dlen:
        raise StreamError(f"Torn data payload at offset {offset}")
    return offset, data


class Sender:
    """Stream a file that a writer may be rewriting in arbitrary order.

    - The block map holds the digest last sent for each block offset.
    - A short trailing block is held back until the final pass.
    - Finalization comes from `final`, never from EOF of the file.
    """

    def __init__(
        self,
        path: Path,
        out: BinaryIO,
        final: threading.Event,
        block_size: int = BLOCK_SIZE,
        delay: float = SEND_DELAY,
    ):
        self.path = Path(path)
        self.out = out
        self.final = final
        self.block_size = block_size
        self.delay = delay
        self.block_map: dict[int, bytes] = {}

    def scan(self, final: bool = False) -> int:
        """Run one pass over the file. Returns the number of records emitted."""
        emitted = 0
        with open(self.path, "rb") as f:
            offset = 0
            while True:
                block = f.read(self.block_size)
                if not block:
                    break
                if len(block) < self.block_size and not final:
                    break
                h = _digest(block)
                if self.block_map.get(offset) != h:
                    self.out.write(encode_record(offset, block))
                    self.block_map[offset] = h
                    emitted += 1
                offset += len(block)
        if final:
            self.out.write(encode_record(offset, b""))
            emitted += 1
        self.out.flush()
        return emitted

    def run(self) -> None:
        while True:
            # Read the flag before the pass so the final pass sees every write
            # made before finalization.
            final = self.final.is_set()
            if not self.path.exists():
                if final:
                    return
                self.final.wait(self.delay)
                continue
            try:
                self.scan(final)
            except FileNotFoundError:
                continue
            if final:
                return
            self.final.wait(self.delay)


class Receiver:
    """Rebuild a file from a block stream."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.complete = False
        self.size: int | None = None
        self.records = 0

    def apply(self, stream: BinaryIO) -> None:
        with open(self.path, "w+b") as f:
            while True:
                rec = read_record(stream)
                if rec is None:
                    break
                offset, data = rec
                self.records += 1
                f.seek(offset)
                if not data:
                    f.truncate(offset)
                    self.complete = True
                    self.size = offset
                else:
                    f.write(data)
                f.flush()


def _finalize_on_eof(stream: BinaryIO, final: threading.Event) -> None:
    while stream.read(4096):
        pass
    final.set()


def main(argv: list[str]) -> int:
    if len(argv) != 3 or argv[1] not in {"send", "receive"}:
        print("Usage: blocksync.py send|receive <file>", file=sys.stderr)
        return 2

    if argv[1] == "receive":
        try:
            Receiver(Path(argv[2])).apply(sys.stdin.buffer)
        except StreamError as e:
            print(f"FATAL: {e}", file=sys.stderr)
            return 1
        return 0

    final = threading.Event()
    watcher = threading.Thread(
        target=_finalize_on_eof, args=(sys.stdin.buffer, final), daemon=True
    )
    watcher.start()
    started = time.monotonic()
    Sender(Path(argv[2]), sys.stdout.buffer, final).run()
    print(f"blocksync: sent {argv[2]} in {time.monotonic() - started:.2f}s", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
