import os

import pytest

from shh import tracer
from shh._types import Syscall
from shh.tracer import Tracer, ensure_strace, strace_command
from tests.utils.traces import SERVICE_TRACE, fake_strace


def test_strace_command():
    assert strace_command(["/usr/bin/svc", "--flag"], "/tmp/out", 64) == [
        "strace", "-f", "-qq", "-yy", "-ttt", "-s", "64", "-o", "/tmp/out", "--", "/usr/bin/svc", "--flag",
    ]


def test_tracer_needs_command():
    with pytest.raises(ValueError):
        Tracer([])


def test_tracer_runs_and_cleans_up(monkeypatch):
    calls = []
    monkeypatch.setattr(tracer.subprocess, "call", fake_strace(SERVICE_TRACE, returncode=3, calls=calls))

    with Tracer(["/usr/bin/svcd", "--foreground"], string_limit=128) as t:
        events = list(t.events())
        trace_file = t.trace_file
        assert os.path.exists(trace_file)

    assert t.returncode == 3
    assert calls[0][-2:] == ["/usr/bin/svcd", "--foreground"]
    assert "128" in calls[0]
    assert sum(isinstance(e, Syscall) for e in events) == 26
    assert t.warnings.total() == 0
    assert not os.path.exists(trace_file)


def test_tracer_keeps_trace(monkeypatch, tmp_path):
    monkeypatch.setattr(tracer.subprocess, "call", fake_strace("1 getpid() = 1\ngarbage line"))
    keep = str(tmp_path / "raw.strace")

    with Tracer(["true"], keep_trace=keep) as t:
        events = list(t.events())

    assert os.path.exists(keep)
    assert len(events) == 1
    assert t.warnings.total() == 1


def test_events_outside_context():
    with pytest.raises(RuntimeError):
        list(Tracer(["true"]).events())


def test_ensure_strace_requires_linux(monkeypatch):
    monkeypatch.setattr(tracer.platform, "system", lambda: "Darwin")
    with pytest.raises(SystemExit):
        ensure_strace()


def test_ensure_strace_requires_binary(monkeypatch):
    monkeypatch.setattr(tracer.platform, "system", lambda: "Linux")
    monkeypatch.setattr(tracer.shutil, "which", lambda name: None)
    with pytest.raises(SystemExit):
        ensure_strace()
    monkeypatch.setattr(tracer.shutil, "which", lambda name: "/usr/bin/strace")
    ensure_strace()
