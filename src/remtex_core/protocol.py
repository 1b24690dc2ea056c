"""remtex protocol constants.

Single source of truth for wire layouts, marker names and timing defaults.
Keep this file stable. The local session and the remote orchestrator must
remain synchronized.
"""

# Local host sentinel: compile on this machine, no ssh, no compression
LOCAL_HOST = "-"

# Remote environment (caller -> remote command)
ENV_JOB = "REMTEX_JOB"
ENV_WORKDIR = "REMTEX_WORKDIR"
ENV_ARCHIVE = "REMTEX_ARCHIVE"  # "gz" | "plain"
ENV_FIRST = "REMTEX_FIRST"  # "1" | "0"
ENV_HELPER = "REMTEX_HELPER"  # blocksync helper program body
ENV_COMPILER = "REMTEX_COMPILER"  # optional command template with {job}

ARCHIVE_GZ = "gz"
ARCHIVE_PLAIN = "plain"

# The document arrives on a FIFO that never reaches EOF. It is read as a
# file and errors never prompt, so a failing run exits instead of waiting.
DEFAULT_COMPILER = "pdflatex -interaction=nonstopmode -halt-on-error -jobname={job} /dev/stdin"

# Abort directive. The primed input ends mid-line, after the body marker.
ABORT_LINE = "\nx\n"

# Status lines on the diagnostic channel (remote stderr)
STATUS_PREFIX = "REMTEX "
RECOMPILE_MARKER = "REMTEX recompile"
STATUS_FMT = "REMTEX status={status} elapsed={elapsed:.2f} recompiled={recompiled}"

# Document structure
BODY_MARKER = "\\begin{document}"
DOCUMENT_ENCODING = "latin-1"  # byte-transparent
OUTPUT_EXT = ".pdf"

# Remote working directory layout
WORKDIR_PREFIX = "remtex-"
STATE_DIR = ".remtex"
HELPER_NAME = "blocksync.py"
PREAMBLE_CACHE = "preamble.tex"
PREAMBLE_NEXT = "preamble.next"
COMPILER_FIFO = "compiler.in"
COMPILER_PID = "compiler.pid"
COMPILER_STATUS = "compiler.status"
COMPILER_LOG = "compiler.log"

# User class/config/style files fingerprinted for preamble reuse
STYLE_SUFFIXES = (".cls", ".sty", ".cfg")

# Auxiliary artifacts restored after aborted or failed runs
AUX_SUFFIXES = (
    ".aux", ".bbl", ".blg", ".toc", ".lof", ".lot", ".out",
    ".nav", ".snm", ".idx", ".ind", ".ilg",
)

# Local marker files (same directory as the source)
STAMP_FMT = ".{job}.remtex-stamp"
PENDING_FMT = ".{job}.pdf.remtex-new"
UPLOAD_FMT = ".{job}.remtex-upload.tar"

# Timing defaults (seconds)
POLL_INTERVAL = 0.25  # change polling and settle threshold
SOURCE_RETRY_DELAY = 1.0  # single bounded retry for a vanished source
COMPILER_POLL = 0.05  # compiler exit polling
ABORT_GRACE = 5.0  # wait after "x" before killing the compiler
FEED_TIMEOUT = 10.0  # wait for the compiler to open its input
