import sys
from pathlib import Path

from remtex_core.blocksync import StreamError, read_record

def main():
    if len(sys.argv) != 2:
        print("Usage: dump_stream.py <captured-stream>")
        raise SystemExit(2)

    p = Path(sys.argv[1])
    n = 0
    end = 0
    with open(p, "rb") as f:
        while True:
            try:
                rec = read_record(f)
            except StreamError as e:
                print(f"FATAL: record {n}: {e}")
                raise SystemExit(1)
            if rec is None:
                break
            offset, data = rec
            if data:
                print(f"{n:6d}  offset={offset:<10d} len={len(data)}")
                end = max(end, offset + len(data))
            else:
                print(f"{n:6d}  offset={offset:<10d} TRUNCATE")
                end = offset
            n += 1
    print(f"{n} records, final size {end} bytes")

if __name__ == "__main__":
    main()
