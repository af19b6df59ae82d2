from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional, Sequence, Tuple

from .aggregator import ProfileAggregator
from .catalog import Catalog, default_catalog
from .config import HardeningOptions, ParserOptions, load_config
from .profile import BehavioralProfile, merge_profiles
from .renderer import render_fragment, render_snippet
from .service import Service
from .strace_parser import ParseWarnings, StraceParser
from .synthesizer import DirectiveSet, synthesize
from .tracer import Tracer, ensure_strace
from .utils import ProfileSerializer, TraceSerializer, build_report, dump_report

logger = logging.getLogger("shh")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


# ----------------------------
# Pipeline helpers
# ----------------------------

def _options(args: argparse.Namespace) -> Tuple[HardeningOptions, ParserOptions]:
    config = load_config(args.config)
    if getattr(args, "mode", None):
        config["mode"] = args.mode
    return HardeningOptions.from_config(config), ParserOptions.from_config(config)


def _synthesize(profile: BehavioralProfile, options: HardeningOptions,
                directives: Optional[Sequence[str]] = None) -> DirectiveSet:
    catalog: Catalog = default_catalog(options)
    directive_set = synthesize(profile, catalog, max_iterations=options.max_iterations, directives=directives)
    for warning in directive_set.warnings:
        logger.warning(warning)
    return directive_set


def profile_traces(paths: Sequence[str], parser_options: ParserOptions,
                   cwd: Optional[str] = None) -> Tuple[BehavioralProfile, ParseWarnings]:
    """Each trace file is one profiling run; the resulting profiles are merged."""
    warnings = ParseWarnings(parser_options.warning_samples)
    profiles = []
    for path in paths:
        logger.info("Reading trace file: %s...", path)
        if path.endswith(".json"):
            events = TraceSerializer.load(path)
        else:
            parser = StraceParser(warning_samples=parser_options.warning_samples)
            with open(path, "r", errors="surrogateescape") as f:
                events = list(parser.parse(f))
            warnings.merge(parser.warnings)
        profiles.append(ProfileAggregator(events, cwd=cwd).profile)
    return merge_profiles(profiles), warnings


def _write_outputs(directive_set: DirectiveSet, profile: BehavioralProfile, args: argparse.Namespace,
                   warnings: Optional[ParseWarnings] = None, snippet: bool = False) -> None:
    if getattr(args, "report_file", None):
        dump_report(build_report(directive_set, profile, warnings), args.report_file)
    if not getattr(args, "no_print", False):
        print(render_snippet(directive_set) if snippet else render_fragment(directive_set), end="")


# ----------------------------
# Subcommands
# ----------------------------

def cmd_run(args: argparse.Namespace) -> int:
    hardening, parser_options = _options(args)
    command: List[str] = args.command[1:] if args.command[:1] == ["--"] else args.command
    if not command:
        logger.error("No command given to run.")
        return EXIT_USAGE
    ensure_strace()

    with Tracer(command, string_limit=parser_options.strace_string_limit,
                warning_samples=parser_options.warning_samples, keep_trace=args.strace_log) as tracer:
        events = list(tracer.events())
        warnings = tracer.warnings
        returncode = tracer.returncode

    if args.trace_file:
        TraceSerializer.dump(events, args.trace_file)
    # the traced command starts in our working directory
    profile = ProfileAggregator(events, cwd=os.getcwd()).profile

    if args.profile_data:
        ProfileSerializer.dump(profile, args.profile_data)
    else:
        directive_set = _synthesize(profile, hardening)
        _write_outputs(directive_set, profile, args, warnings, snippet=True)
    return returncode if returncode is not None else EXIT_FAILURE


def cmd_analyze(args: argparse.Namespace) -> int:
    hardening, parser_options = _options(args)
    profile, warnings = profile_traces(args.traces, parser_options, cwd=args.cwd)
    if args.merge:
        profile = ProfileSerializer.load_and_merge(args.merge).merge(profile)
    if args.profile_data:
        ProfileSerializer.dump(profile, args.profile_data)
    directive_set = _synthesize(profile, hardening, args.directive or None)
    _write_outputs(directive_set, profile, args, warnings)
    return EXIT_OK


def cmd_merge_profile_data(args: argparse.Namespace) -> int:
    hardening, _ = _options(args)
    profile = ProfileSerializer.load_and_merge(args.paths)
    if args.output:
        ProfileSerializer.dump(profile, args.output)
    directive_set = _synthesize(profile, hardening)
    _write_outputs(directive_set, profile, args, snippet=True)
    return EXIT_OK


def cmd_list_systemd_options(args: argparse.Namespace) -> int:
    hardening, _ = _options(args)
    for entry in default_catalog(hardening).listing():
        print(f"- {entry['name']}: {entry['description']}")
        for level in entry["levels"]:
            print(f"    {level['name']}: {level['effect']}")
    return EXIT_OK


def _unit_config(service: Service, args: argparse.Namespace) -> List[str]:
    if args.unit_config:
        return args.unit_config
    try:
        return [str(p) for p in service.config_paths(args.root)]
    except FileNotFoundError as e:
        logger.warning("%s; existing settings are not checked.", e)
        return []


def _harden(service: Service, profiles: Sequence[str], args: argparse.Namespace) -> int:
    hardening, _ = _options(args)
    profile = ProfileSerializer.load_and_merge(profiles)
    directive_set = _synthesize(profile, hardening)
    options = directive_set.options()

    config_paths = _unit_config(service, args)
    for key in sorted({key for key, _ in options}):
        existing = Service.config_vals(key, config_paths)
        if existing:
            logger.warning("%s already sets %s=%s; the hardening fragment overrides it.",
                           service.unit_name(), key, " ".join(existing))

    path = service.add_hardening_fragment(options, persistent=not args.runtime, root=args.root)
    if args.report_file:
        dump_report(build_report(directive_set, profile), args.report_file)
    print(path)
    return EXIT_OK


def cmd_apply(args: argparse.Namespace) -> int:
    service = Service(args.unit)
    if args.remove:
        service.remove_hardening_fragment(persistent=not args.runtime, root=args.root)
        return EXIT_OK
    if not args.profiles:
        logger.error("No profile data given for %s.", service.unit_name())
        return EXIT_USAGE
    return _harden(service, args.profiles, args)


def cmd_start_profile(args: argparse.Namespace) -> int:
    service = Service(args.unit)
    # forwarded to the run and merge-profile-data invocations inside the unit
    cmdline_opts: List[str] = []
    if args.config:
        cmdline_opts.extend(["--config", os.path.abspath(args.config)])
    if args.mode:
        cmdline_opts.extend(["--mode", args.mode])
    profile_output = os.path.abspath(args.profile_output) if args.profile_output else None
    path = service.add_profile_fragment(
        args.shh_bin or os.path.abspath(sys.argv[0]),
        cmdline_opts,
        profile_output=profile_output,
        config_paths=args.unit_config or None,
        root=args.root,
    )
    print(path)
    return EXIT_OK


def cmd_finish_profile(args: argparse.Namespace) -> int:
    service = Service(args.unit)
    service.remove_profile_fragment(root=args.root)
    if args.apply:
        return _harden(service, args.apply, args)
    return EXIT_OK


# ----------------------------
# Argument parsing
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, default=None, help="Path to YAML configuration file.")
    common.add_argument("--mode", choices=("safe", "aggressive"), default=None,
                        help="Hardening mode (overrides the configuration file).")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    parser = argparse.ArgumentParser(
        prog="shh",
        description="Systemd Hardening Helper: derive systemd sandboxing options from strace runs",
    )
    sub = parser.add_subparsers(dest="subcommand", required=True)

    p = sub.add_parser("run", parents=[common], help="Run a command under strace and profile it.")
    p.add_argument("-p", "--profile-data", type=str, default=None,
                   help="Write profile data to this path instead of printing options.")
    p.add_argument("--trace-file", type=str, default=None, help="Write parsed trace events (JSON) to this path.")
    p.add_argument("--strace-log", type=str, default=None, help="Keep raw strace output at this path.")
    p.add_argument("--report-file", type=str, default=None, help="Write JSON report to this path.")
    p.add_argument("--no-print", action="store_true", help="Do not print options to stdout.")
    p.add_argument("command", nargs=argparse.REMAINDER, help="Command to run, after '--'.")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("analyze", parents=[common], help="Synthesize options from saved strace output.")
    p.add_argument("traces", nargs="+", help="strace output files (or .json trace files), one per run.")
    p.add_argument("-p", "--profile-data", type=str, default=None, help="Write the merged profile to this path.")
    p.add_argument("--merge", action="append", default=[], help="Prior profile data to merge (repeatable).")
    p.add_argument("--directive", action="append", default=[], help="Only consider this directive (repeatable).")
    p.add_argument("--cwd", type=str, default=None,
                   help="Working directory the traced command started in, for relative paths.")
    p.add_argument("--report-file", type=str, default=None, help="Write JSON report to this path.")
    p.add_argument("--no-print", action="store_true", help="Do not print the fragment to stdout.")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("merge-profile-data", parents=[common], help="Merge profile data files and print options.")
    p.add_argument("paths", nargs="+", help="Profile data files.")
    p.add_argument("-o", "--output", type=str, default=None, help="Write the merged profile to this path.")
    p.add_argument("--report-file", type=str, default=None, help="Write JSON report to this path.")
    p.set_defaults(func=cmd_merge_profile_data)

    p = sub.add_parser("list-systemd-options", parents=[common], help="List supported directives and levels.")
    p.set_defaults(func=cmd_list_systemd_options)

    p = sub.add_parser("apply", parents=[common], help="Write the hardening fragment of a service.")
    p.add_argument("unit", help="Service unit name (name, name@arg or name.service).")
    p.add_argument("profiles", nargs="*", help="Profile data files.")
    p.add_argument("--unit-config", action="append", default=[],
                   help="Unit file and drop-ins in load order (default: found under --root).")
    p.add_argument("--root", type=str, default="/", help="Filesystem root for the fragment (default: /).")
    p.add_argument("--runtime", action="store_true", help="Write under /run instead of /etc.")
    p.add_argument("--remove", action="store_true", help="Remove the hardening fragment instead.")
    p.add_argument("--report-file", type=str, default=None, help="Write JSON report to this path.")
    p.set_defaults(func=cmd_apply)

    p = sub.add_parser("start-profile", parents=[common], help="Add the profiling fragment to a service.")
    p.add_argument("unit", help="Service unit name (name, name@arg or name.service).")
    p.add_argument("--unit-config", action="append", default=[],
                   help="Unit file and drop-ins in load order (default: found under --root).")
    p.add_argument("--root", type=str, default="/", help="Filesystem root for unit files (default: /).")
    p.add_argument("-o", "--profile-output", type=str, default=None,
                   help="Where the merged profile is written when the service stops.")
    p.add_argument("--shh-bin", type=str, default=None, help="shh executable the unit runs (default: this one).")
    p.set_defaults(func=cmd_start_profile)

    p = sub.add_parser("finish-profile", parents=[common], help="Remove the profiling fragment of a service.")
    p.add_argument("unit", help="Service unit name (name, name@arg or name.service).")
    p.add_argument("-a", "--apply", nargs="+", default=None, metavar="PROFILE",
                   help="Also write the hardening fragment from these profile data files.")
    p.add_argument("--unit-config", action="append", default=[],
                   help="Unit file and drop-ins in load order (default: found under --root).")
    p.add_argument("--root", type=str, default="/", help="Filesystem root for unit files (default: /).")
    p.add_argument("--runtime", action="store_true", help="Write the hardening fragment under /run.")
    p.add_argument("--report-file", type=str, default=None, help="Write JSON report to this path.")
    p.set_defaults(func=cmd_finish_profile)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except (FileNotFoundError, IsADirectoryError, PermissionError) as e:
        logger.error("%s", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        return EXIT_USAGE
    except FileExistsError as e:
        logger.error("%s", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        return EXIT_FAILURE
    except ValueError as e:
        logger.error("Failed: %r", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
