from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import tempfile
from typing import Iterator, List, Optional, Sequence

from ._types import Event
from .strace_parser import ParseWarnings, StraceParser

logger = logging.getLogger("tracer")


def strace_command(command: Sequence[str], output_file: str, string_limit: int = 256) -> List[str]:
    # -yy annotates fds with paths and socket endpoints, -qq drops attach/exit chatter
    return ["strace", "-f", "-qq", "-yy", "-ttt", "-s", str(string_limit), "-o", output_file, "--", *command]


class Tracer:
    """
    Run a command under strace, then expose its events.

    with Tracer(["/usr/bin/svc", "--flag"]) as t:
        profile = ProfileAggregator(t.events()).profile
    """

    def __init__(self, command: Sequence[str], string_limit: int = 256, warning_samples: int = 5,
                 keep_trace: Optional[str] = None):
        if not command:
            raise ValueError("No command to trace")
        self.command = list(command)
        self.string_limit = string_limit
        self.parser = StraceParser(warning_samples=warning_samples)
        self.returncode: Optional[int] = None
        self._trace_file: Optional[str] = None
        self._keep_trace = keep_trace

    def __enter__(self) -> Tracer:
        if self._keep_trace:
            self._trace_file = self._keep_trace
        else:
            with tempfile.NamedTemporaryFile(prefix="shh-", suffix=".strace", delete=False) as tmp_file:
                self._trace_file = tmp_file.name

        cmd = strace_command(self.command, self._trace_file, self.string_limit)
        logger.info("Tracing: %s", " ".join(self.command))
        logger.debug("strace command: %s", cmd)
        self.returncode = subprocess.call(cmd)
        logger.info("Traced command exited with %d", self.returncode)
        return self

    def __exit__(self, exec_type, exec_value, traceback) -> None:
        if self._trace_file and not self._keep_trace:
            try:
                os.unlink(self._trace_file)
            except FileNotFoundError:
                pass

    @property
    def trace_file(self) -> Optional[str]:
        return self._trace_file

    @property
    def warnings(self) -> ParseWarnings:
        return self.parser.warnings

    def events(self) -> Iterator[Event]:
        if self._trace_file is None:
            raise RuntimeError("Tracer used outside of its context")
        with open(self._trace_file, "r", errors="surrogateescape") as f:
            yield from self.parser.parse(f)


def ensure_strace() -> None:
    """
    Preflight for live tracing:
      - Linux only
      - strace must exist
    On failure: logs a clear error and exits the process.
    """
    if platform.system() != "Linux":
        logger.error("Profiling requires Linux.")
        raise SystemExit(1)

    if shutil.which("strace") is None:
        logger.error(
            "Missing dependency: 'strace' not found in PATH.\n"
            "Fix: sudo apt-get update && sudo apt-get install -y strace"
        )
        raise SystemExit(1)

    logger.debug("Tracing prerequisites OK (strace present).")
