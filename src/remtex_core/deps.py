"""Heuristic LaTeX dependency scanner.

Finds every local file a document needs to compile by following include-like
commands. This is static analysis over a macro language, so it is best
effort: macros are never expanded, only one-argument wrappers around known
include commands are recognized as new include commands.
"""
from __future__ import annotations

import glob
import os
import re
from collections import deque
from pathlib import Path

from remtex_core.protocol import OUTPUT_EXT

INCLUDE_COMMANDS = (
    "input",
    "include",
    "InputIfFileExists",
    "includegraphics",
    "includepdf",
    "includesvg",
    "includestandalone",
    "subfile",
    "usepackage",
    "RequirePackage",
    "documentclass",
    "LoadClass",
    "bibliography",
    "addbibresource",
    "bibliographystyle",
    "lstinputlisting",
    "verbatiminput",
)

# Tried in order against every search path prefix.
CANDIDATE_EXTS = (
    "", ".tex", ".sty", ".cls", ".cfg", ".clo", ".def", ".bib", ".bst",
    ".pdf", ".png", ".jpg", ".jpeg", ".eps", ".svg", ".pdf_tex", ".pgf", ".tikz",
)

# Dependencies with these suffixes are scanned in turn.
DOCUMENT_EXTS = frozenset(
    {".tex", ".cls", ".cfg", ".sty", ".clo", ".def", ".pdf_tex", ".pgf", ".tikz"}
)

_COMMENT_RE = re.compile(r"(?<!\\)%.*")
_NEWCOMMAND_RE = re.compile(
    r"\\(?:re|provide)?newcommand\*?\s*\{?\s*\\([A-Za-z@]+)\s*\}?\s*\[1\]"
    r"|\\def\s*\\([A-Za-z@]+)\s*#1"
)
_GRAPHICSPATH_RE = re.compile(r"\\graphicspath\s*\{((?:\s*\{[^{}]*\})+)\s*\}")
_BRACED_RE = re.compile(r"\{([^{}]*)\}")
_ANIMATE_RE = re.compile(
    r"\\animategraphics\*?\s*(?:\[[^\]]*\])?\s*\{[^{}]*\}\s*\{([^{}]*)\}"
)


def _names_alternation(commands: set[str]) -> str:
    return "|".join(re.escape(c) for c in sorted(commands, key=len, reverse=True))


class DependencyScanner:
    """Collect the ordered dependency set of one root document.

    Command set and search path are per-scan state: a scanner instance is
    used for exactly one `scan()`.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.base = self.root.parent
        self.job = self.root.stem
        self.commands: set[str] = set(INCLUDE_COMMANDS)
        self.search_path: list[str] = [""]
        self._found: dict[str, None] = {}
        self._queue: deque[str] = deque()
        self._compile_patterns()

    def _compile_patterns(self) -> None:
        names = _names_alternation(self.commands)
        self._use_re = re.compile(r"\\(?:" + names + r")(?![A-Za-z@])")
        self._arg_re = re.compile(
            r"\\(?:" + names + r")(?![A-Za-z@])\*?\s*(?:\[[^\]]*\]\s*)*\{([^{}]*)\}"
        )

    def scan(self) -> list[str]:
        """Return dependencies relative to the root's directory, root first."""
        seen: set[str] = set()
        self._record(self.root.name)
        self._queue.append(self.root.name)
        while self._queue:
            name = self._queue.popleft()
            if name in seen:
                continue
            seen.add(name)
            self._scan_file(name)

        bbl = f"{self.job}.bbl"
        if (self.base / bbl).is_file():
            self._record(bbl)
        return list(self._found)

    def _scan_file(self, name: str) -> None:
        try:
            f = open(self.base / name, encoding="utf-8", errors="replace")
        except OSError:
            return
        with f:
            for raw in f:
                self._scan_line(_COMMENT_RE.sub("", raw))

    def _scan_line(self, line: str) -> None:
        m = _NEWCOMMAND_RE.search(line)
        if m and self._use_re.search(line):
            new = m.group(1) or m.group(2)
            if new not in self.commands:
                self.commands.add(new)
                self._compile_patterns()

        for gp in _GRAPHICSPATH_RE.finditer(line):
            for prefix in _BRACED_RE.findall(gp.group(1)):
                if prefix and prefix not in self.search_path:
                    self.search_path.append(prefix)

        for am in _ANIMATE_RE.finditer(line):
            self._add_frames(am.group(1).strip())

        for im in self._arg_re.finditer(line):
            for arg in im.group(1).split(","):
                arg = arg.strip()
                if arg and "#" not in arg:
                    self._add_candidates(arg)

    def _add_candidates(self, arg: str) -> None:
        for prefix in self.search_path:
            for ext in CANDIDATE_EXTS:
                name = os.path.normpath(prefix + arg + ext)
                if (self.base / name).is_file():
                    self._add(name)

    def _add_frames(self, arg: str) -> None:
        if not arg:
            return
        for prefix in self.search_path:
            pattern = glob.escape(str(self.base / (prefix + arg))) + "*"
            for match in sorted(glob.glob(pattern)):
                if os.path.isfile(match):
                    self._add(os.path.relpath(match, self.base))

    def _add(self, name: str) -> None:
        name = Path(name).as_posix()
        if name == self.job + OUTPUT_EXT:
            return
        if name in self._found:
            return
        self._record(name)
        if Path(name).suffix in DOCUMENT_EXTS:
            self._queue.append(name)

    def _record(self, name: str) -> None:
        self._found.setdefault(Path(name).as_posix(), None)


def scan_dependencies(root: Path) -> list[str]:
    """Scan root and return its dependency set."""
    return DependencyScanner(root).scan()
