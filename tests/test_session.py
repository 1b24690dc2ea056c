import os
import shlex
import shutil
import subprocess
import sys
import tarfile
import threading
import time
from pathlib import Path

import pytest

from remtex_compile.compiler import CompilerProcess
from remtex_core.errors import RemoteError, SetupError
from remtex_session.archive import member_name, write_archive
from remtex_session.baseline import FreshnessBaseline
from remtex_session.loop import Session, SessionConfig, parse_diagnostics, resolve_source
from remtex_session.remote import RemoteChannel

REPO = Path(__file__).resolve().parents[1]
COMPILER = shlex.join([sys.executable, str(REPO / "tools" / "sim_compiler.py")]) + " {job}"


def run(args, cwd):
    return subprocess.run(
        [sys.executable, "-m", "remtex_session.cli", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=120,
    )


def test_baseline_is_monotonic(tmp_path):
    marker = tmp_path / ".doc.remtex-stamp"
    b = FreshnessBaseline(marker)
    assert b.value == 0.0
    assert b.advance(1000.0) == 1000.0
    assert b.advance(500.0) == 1000.0
    assert marker.stat().st_mtime == 1000.0
    b.advance(1500.5)
    assert marker.stat().st_mtime == 1500.5
    b.clear()
    assert not marker.exists()
    assert b.value == 1500.5


def test_resolve_source_completions(tmp_path):
    doc = tmp_path / "doc.tex"
    doc.write_text("")
    assert resolve_source(str(tmp_path / "doc")) == doc.resolve()
    assert resolve_source(str(tmp_path / "doc.")) == doc.resolve()
    assert resolve_source(str(doc)) == doc.resolve()


def test_resolve_source_missing(tmp_path):
    with pytest.raises(SetupError) as e:
        resolve_source(str(tmp_path / "nothere"))
    assert e.value.code == "E_SOURCE_MISSING"


def test_resolve_source_ambiguous(tmp_path):
    (tmp_path / "doc.tex").write_text("")
    (tmp_path / "doc").write_text("")
    with pytest.raises(SetupError) as e:
        resolve_source(str(tmp_path / "doc"))
    assert e.value.code == "E_SOURCE_AMBIGUOUS"


def test_archive_includes_only_files_at_or_after_baseline(tmp_path):
    for name, t in [("old.tex", 100.0), ("edge.tex", 150.0), ("new.tex", 200.0)]:
        p = tmp_path / name
        p.write_text(name)
        os.utime(p, (t, t))
    dest = tmp_path / "up.tar"
    names = ["old.tex", "edge.tex", "new.tex", "missing.tex"]
    assert write_archive(names, tmp_path, dest, 150.0, compressed=True) == 2
    with tarfile.open(dest, "r:gz") as tar:
        assert tar.getnames() == ["edge.tex", "new.tex"]
        assert tar.getmember("new.tex").mtime == 200


def test_member_name_strips_escapes():
    assert member_name("/abs/x.tex") == "abs/x.tex"
    assert member_name("../../up.sty") == "up.sty"
    assert member_name("chapters/a.tex") == "chapters/a.tex"
    assert member_name("..") == ""


def test_parse_diagnostics_splits_status_lines():
    report = parse_diagnostics([
        "This is pdfTeX",
        "REMTEX recompile",
        "REMTEX status=1 elapsed=0.52 recompiled=1",
        "! Undefined control sequence.",
    ])
    assert report.status == 1
    assert report.elapsed == 0.52
    assert report.recompiled
    assert report.diagnostics == ["This is pdfTeX", "! Undefined control sequence."]
    assert parse_diagnostics(["noise"]).status is None


def test_remote_channel_commands():
    local = RemoteChannel("-")
    assert not local.compressed
    assert local.command("run", {"REMTEX_JOB": "doc"}) == [
        sys.executable, "-m", "remtex_compile.cli", "run",
    ]

    ssh = RemoteChannel("build.example.org")
    assert ssh.compressed
    assert ssh.command("run", {"REMTEX_JOB": "doc", "REMTEX_COMPILER": "latex {job}"}) == [
        "ssh", "-T", "build.example.org",
        "env 'REMTEX_COMPILER=latex {job}' REMTEX_JOB=doc python3 -m remtex_compile.cli run",
    ]


def test_cli_missing_source_is_fatal(tmp_path):
    r = run(["-", "nothere.tex"], cwd=tmp_path)
    assert r.returncode == 1
    assert "FATAL: Source file not found" in r.stderr


def test_cli_once_on_local_host(tmp_path):
    (tmp_path / "doc.tex").write_text(
        "\\documentclass{article}\n\\begin{document}\nHello.\n\\end{document}\n"
    )
    r = run(["-", "doc", "--once", "--compiler", COMPILER], cwd=tmp_path)
    assert r.returncode == 0, r.stderr + r.stdout
    assert "doc: ok" in r.stdout

    pdf = tmp_path / "doc.pdf"
    assert pdf.read_bytes().startswith(b"%PDF-SIM")
    assert b"Hello." in pdf.read_bytes()
    leftovers = [p.name for p in tmp_path.iterdir() if p.name.startswith(".doc.")]
    assert leftovers == []


def test_cli_once_reports_compiler_failure(tmp_path):
    (tmp_path / "doc.tex").write_text(
        "\\documentclass{article}\n\\begin{document}\n\\fail\n\\end{document}\n"
    )
    r = run(["-", "doc.tex", "--once", "--compiler", COMPILER], cwd=tmp_path)
    assert r.returncode == 1
    assert "FAILED (status 1)" in r.stdout
    assert "Undefined control sequence" in r.stderr
    assert not (tmp_path / "doc.pdf").exists()


def test_archive_ships_new_names_whatever_their_age(tmp_path):
    for name, t in [("doc.tex", 200.0), ("chap.tex", 100.0), ("fig.png", 100.0)]:
        p = tmp_path / name
        p.write_text(name)
        os.utime(p, (t, t))
    dest = tmp_path / "up.tar"
    names = ["doc.tex", "chap.tex", "fig.png"]
    assert write_archive(names, tmp_path, dest, 150.0, compressed=False, always=["chap.tex"]) == 2
    with tarfile.open(dest) as tar:
        assert tar.getnames() == ["doc.tex", "chap.tex"]


def document(body, preamble=""):
    return "\\documentclass{article}\n" + preamble + "\\begin{document}\n" + body + "\n\\end{document}\n"


@pytest.fixture
def session(tmp_path, monkeypatch):
    proj = tmp_path / "proj"
    proj.mkdir()
    (proj / "doc.tex").write_text(document("Hello."))
    # Run from somewhere other than the source directory.
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    s = Session(SessionConfig(host="-", source=proj / "doc.tex", compiler=COMPILER))
    yield s
    s.teardown()


def edit(s, body, preamble=""):
    (s.base / "doc.tex").write_text(document(body, preamble))


def test_edits_detected_from_another_directory(session):
    session.bootstrap()
    assert session.iterate(wait=False) == 0
    assert all(os.path.exists(p) for p in session.watcher().paths)

    waiter = threading.Thread(target=session.wait_for_change, daemon=True)
    waiter.start()
    time.sleep(0.5)
    edit(session, "Edited.")
    waiter.join(10.0)
    assert not waiter.is_alive()

    assert session.iterate(wait=False) == 0
    assert b"Edited." in (session.base / "doc.pdf").read_bytes()


def test_baseline_advances_across_iterations(session):
    session.bootstrap()
    b0 = session.baseline.value
    session.iterate(wait=False)
    b1 = session.baseline.value
    edit(session, "Second.")
    session.iterate(wait=False)
    b2 = session.baseline.value
    assert 0 < b0 < b1 < b2
    assert session.baseline.marker.stat().st_mtime == pytest.approx(b2, abs=1e-3)


def test_failed_remote_run_waits_for_next_change(session):
    session.bootstrap()
    session.iterate(wait=False)
    b1 = session.baseline.value
    edit(session, "Lost.")

    workdir = Path(session.workdir)
    CompilerProcess.attach(workdir).abort()
    shutil.rmtree(workdir)
    with pytest.raises(RemoteError):
        session.iterate(wait=False)

    assert session.baseline.value == b1
    assert not session.watcher().changed_since(session.watch_since)
    time.sleep(0.05)
    edit(session, "Again.")
    assert session.watcher().changed_since(session.watch_since)


def test_failed_compile_keeps_previous_output(session):
    session.bootstrap()
    assert session.iterate(wait=False) == 0
    pdf = session.base / "doc.pdf"
    before = pdf.read_bytes()

    edit(session, "\\fail")
    assert session.iterate(wait=False) == 1
    assert pdf.read_bytes() == before
    assert not session.pending.exists()


def test_older_file_becoming_a_dependency_is_shipped(session):
    chap = session.base / "chap.tex"
    chap.write_text("A chapter.\n")
    os.utime(chap, (1000.0, 1000.0))
    session.bootstrap()
    session.iterate(wait=False)
    assert not (Path(session.workdir) / "chap.tex").exists()

    edit(session, "\\input{chap}")
    assert session.iterate(wait=False) == 0
    assert "chap.tex" in session.deps
    assert "chap.tex" in session.shipped
    assert (Path(session.workdir) / "chap.tex").read_text() == "A chapter.\n"


def test_compiler_output_shown_only_for_first_compile(session, capsys):
    session.bootstrap()
    session.iterate(wait=False)
    assert "Output written on doc.pdf" in capsys.readouterr().err

    edit(session, "Quiet.")
    assert session.iterate(wait=False) == 0
    assert "Output written on doc.pdf" not in capsys.readouterr().err
