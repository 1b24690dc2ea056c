"""Simulated typesetting engine for tests and demos.

Usage: python tools/sim_compiler.py JOB

Reads a document on stdin line by line, like a TeX engine reading its
terminal. An "x" line aborts (exit 1). On \\end{document} it writes JOB.aux
and rewrites JOB.pdf in place, back to front, the way an engine patches an
output file after the fact. A document containing \\fail corrupts JOB.aux
and exits 1.
"""
import hashlib
import os
import sys
from pathlib import Path

BLOCK = 4096


def _sync(f):
    f.flush()
    if hasattr(os, "fdatasync"):
        os.fdatasync(f.fileno())
    else:
        os.fsync(f.fileno())


def write_output(path: Path, payload: bytes) -> None:
    """Rewrite path in place: last block first, then truncate."""
    mode = "r+b" if path.exists() else "w+b"
    with open(path, mode) as f:
        offsets = list(range(0, len(payload), BLOCK))
        for off in reversed(offsets):
            f.seek(off)
            f.write(payload[off:off + BLOCK])
            _sync(f)
        f.truncate(len(payload))
        _sync(f)


def main() -> int:
    if len(sys.argv) != 2:
        print("Usage: sim_compiler.py <job>")
        return 2
    job = sys.argv[1]
    doc = b""
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            print("! Emergency stop (end of input)")
            return 1
        if line.strip() == b"x":
            print("! Job aborted")
            return 1
        doc += line
        if b"\\end{document}" in line:
            break

    digest = hashlib.sha256(doc).hexdigest()
    if b"\\fail" in doc:
        Path(f"{job}.aux").write_bytes(b"CORRUPT\n")
        print("! Undefined control sequence \\fail")
        return 1

    Path(f"{job}.aux").write_bytes(f"\\relax\n% {digest}\n".encode())
    # Enough pages to span several stream blocks
    payload = b"%PDF-SIM\n" + doc * (3 * BLOCK // max(len(doc), 1) + 1)
    write_output(Path(f"{job}.pdf"), payload)
    print(f"Output written on {job}.pdf ({len(payload)} bytes).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
