from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .renderer import FRAGMENT_HEADER, render_lines

logger = logging.getLogger("service")

PROJECT_NAME = "shh"
PROFILING_FRAGMENT_NAME = "profile"
HARDENING_FRAGMENT_NAME = "harden"

# Highest priority first
UNIT_SEARCH_PATH = (
    "etc/systemd/system",
    "run/systemd/system",
    "usr/local/lib/systemd/system",
    "usr/lib/systemd/system",
    "lib/systemd/system",
)
EXEC_START_OPTIONS = ("ExecStartPre", "ExecStart", "ExecStartPost")
# Command prefixes: '+' and '@' commands are kept as they are, the others move to the wrapper
PRIVILEGED_PREFIX = "+"
EXEC_PREFIXES = "-@:+!"


class Service:
    """A systemd service unit, possibly a template instance (`name@arg`)."""

    def __init__(self, unit: str):
        if unit.endswith(".service"):
            unit = unit[:-len(".service")]
        name, sep, arg = unit.partition("@")
        self.name = name
        self.arg: Optional[str] = arg if sep else None

    def __repr__(self):
        return f"Service({self.unit_name()!r})"

    def unit_name(self) -> str:
        suffix = f"@{self.arg}" if self.arg is not None else ""
        return f"{self.name}{suffix}.service"

    def fragment_path(self, fragment: str, persistent: bool, root: Union[str, Path] = "/") -> Path:
        """
        Drop-in path for one of our fragments.

        Persistent fragments go to /etc, runtime ones to /run. Template instances
        share the drop-in directory of their template (`name@.service.d`).
        """
        base = "etc" if persistent else "run"
        unit_dir = f"{self.name}{'@' if self.arg is not None else ''}.service.d"
        return Path(root) / base / "systemd" / "system" / unit_dir / f"zz_{PROJECT_NAME}-{fragment}.conf"

    # ----------------------------
    # Profiling fragment
    # ----------------------------

    def add_profile_fragment(
            self,
            shh_bin: str,
            cmdline_opts: Sequence[str] = (),
            profile_output: Optional[str] = None,
            config_paths: Optional[Sequence[Union[str, Path]]] = None,
            root: Union[str, Path] = "/",
    ) -> Path:
        """
        Runtime drop-in that runs every ExecStart*= command under `shh run`.

        Each wrapped command writes its profile into the unit's runtime
        directory, and ExecStopPost= merges them when the service stops.
        """
        path = self.fragment_path(PROFILING_FRAGMENT_NAME, False, root)
        if path.is_file():
            raise FileExistsError(f"Fragment config already exists at {path}")
        for persistent in (True, False):
            harden_path = self.fragment_path(HARDENING_FRAGMENT_NAME, persistent, root)
            if harden_path.is_file():
                raise FileExistsError(f"Hardening config already exists at {harden_path} "
                                      "and may conflict with profiling")

        if config_paths is None:
            config_paths = self.config_paths(root)
        logger.info("Located unit config file(s): %s", ", ".join(str(p) for p in config_paths))

        opts = " ".join(cmdline_opts)
        runtime_dir = f"{PROJECT_NAME}-profile-data_{random.getrandbits(32):08x}"
        lines = [FRAGMENT_HEADER, "[Service]", "NotifyAccess=all"]
        if self.config_vals("SystemCallFilter", config_paths):
            # strace needs ptrace, which an existing filter would deny
            lines.append("SystemCallFilter=@debug")
        lines.extend([
            "TimeoutStartSec=infinity",
            "KillMode=control-group",
            "StandardOutput=journal",
            f"RuntimeDirectory={runtime_dir}",
        ])

        profile_data_paths: List[str] = []
        for exec_opt in EXEC_START_OPTIONS:
            cmds = self.config_vals(exec_opt, config_paths)
            if cmds:
                lines.append(f"{exec_opt}=")
            for cmd in cmds:
                prefix = cmd[:len(cmd) - len(cmd.lstrip(EXEC_PREFIXES))]
                if PRIVILEGED_PREFIX in prefix or "@" in prefix:
                    lines.append(f"{exec_opt}={cmd}")
                    continue
                data_path = f"/run/{runtime_dir}/{len(profile_data_paths) + 1:03d}"
                profile_data_paths.append(data_path)
                wrapped = " ".join(p for p in (f"{prefix}{shh_bin}", "run", opts, "-p", data_path, "--",
                                               cmd[len(prefix):]) if p)
                lines.append(f"{exec_opt}={wrapped}")
        if not profile_data_paths:
            raise ValueError(f"No command to profile in {self.unit_name()}")

        merge = [shh_bin, "merge-profile-data", opts, *profile_data_paths]
        if profile_output:
            merge.extend(["-o", profile_output])
        lines.append("ExecStopPost=" + " ".join(p for p in merge if p))

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write("\n".join(lines) + "\n")
        logger.info("Config fragment written in %s", path)
        return path

    def remove_profile_fragment(self, root: Union[str, Path] = "/") -> Path:
        path = self.fragment_path(PROFILING_FRAGMENT_NAME, False, root)
        path.unlink()
        logger.info("%s removed", path)
        return path

    # ----------------------------
    # Hardening fragment
    # ----------------------------

    def add_hardening_fragment(
            self,
            options: Iterable[Tuple[str, str]],
            persistent: bool = True,
            root: Union[str, Path] = "/",
    ) -> Path:
        path = self.fragment_path(HARDENING_FRAGMENT_NAME, persistent, root)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [FRAGMENT_HEADER, "[Service]"] + render_lines(options)
        with open(path, "w") as f:
            f.write("\n".join(lines) + "\n")
        logger.info("Config fragment written in %s", path)
        return path

    def remove_hardening_fragment(self, persistent: bool = True, root: Union[str, Path] = "/") -> Path:
        path = self.fragment_path(HARDENING_FRAGMENT_NAME, persistent, root)
        path.unlink()
        logger.info("%s removed", path)
        return path

    # ----------------------------
    # Unit configuration
    # ----------------------------

    def _dropin_dirs(self) -> List[str]:
        dirs = ["service.d"]
        if self.arg is not None:
            dirs.append(f"{self.name}@.service.d")
        dirs.append(f"{self.unit_name()}.d")
        return list(dict.fromkeys(dirs))

    def config_paths(self, root: Union[str, Path] = "/") -> List[Path]:
        """
        Unit file followed by its drop-ins, in the order systemd applies them.

        A template instance falls back to the template unit file. Drop-ins are
        sorted by file name across directories; a file in a higher priority
        directory masks one of the same name further down the search path.
        Our own fragments are left out.
        """
        root = Path(root)
        candidates = [self.unit_name()]
        if self.arg is not None:
            candidates.append(f"{self.name}@.service")
        unit_file = next((root / d / c for c in candidates for d in UNIT_SEARCH_PATH if (root / d / c).is_file()),
                         None)
        if unit_file is None:
            raise FileNotFoundError(f"No unit file found for {self.unit_name()} under {root}")

        dropins: Dict[str, Path] = {}
        for unit_dir in UNIT_SEARCH_PATH:
            for dropin_dir in self._dropin_dirs():
                d = root / unit_dir / dropin_dir
                if not d.is_dir():
                    continue
                for conf in d.glob("*.conf"):
                    if conf.name.startswith(f"zz_{PROJECT_NAME}-"):
                        continue
                    dropins.setdefault(conf.name, conf)
        return [unit_file] + [dropins[name] for name in sorted(dropins)]

    @staticmethod
    def config_vals(key: str, config_paths: Sequence[Union[str, Path]]) -> List[str]:
        """
        Values of `key=` across unit files, in the order systemd applies them.

        A line ending in a backslash continues on the next line. An empty
        assignment resets the list, including values from earlier files.
        """
        vals: List[str] = []
        prefix = f"{key}="
        for config_path in config_paths:
            file_vals: List[str] = []
            with open(config_path, "r") as f:
                lines = iter(f.read().splitlines())
                for line in lines:
                    if not line.startswith(prefix):
                        continue
                    val = line.split("=", 1)[1].strip()
                    if line.endswith("\\"):
                        val = val[:-1]
                        while True:
                            try:
                                next_line = next(lines)
                            except StopIteration:
                                raise ValueError(f"Unexpected end of file in {config_path}") from None
                            val = f"{val} {next_line.lstrip()}"
                            if not next_line.endswith("\\"):
                                break
                            val = val[:-1]
                    file_vals.append(val)

            while "" in file_vals:
                file_vals = file_vals[file_vals.index("") + 1:]
                vals.clear()
            vals.extend(file_vals)
        return vals
