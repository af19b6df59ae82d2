import orjson
import pytest

from shh.catalog import default_catalog
from shh.profile import BehavioralProfile
from shh.synthesizer import synthesize
from shh.utils import ProfileSerializer, TraceSerializer, build_report, dump_report
from tests.utils.traces import SERVICE_TRACE, aggregate_text, parse_text


# ------------------ Traces ---------------------


def test_trace_file_round_trip(tmp_path):
    events = parse_text(SERVICE_TRACE)
    path = str(tmp_path / "trace.json")
    TraceSerializer.dump(events, path)
    assert TraceSerializer.load(path) == events


def test_trace_dumps_compact():
    data = TraceSerializer.dumps(parse_text('1 openat(AT_FDCWD, "/etc/hosts", O_RDONLY) = 3'))
    assert b"\n" not in data
    assert orjson.loads(data)[0]["kind"] == "Syscall"


@pytest.mark.parametrize("data", [b'{"kind": "Syscall"}', b'[{"kind": "Banana"}]'])
def test_trace_loads_rejects(data):
    with pytest.raises(ValueError):
        TraceSerializer.loads(data)


# ------------------ Profiles ---------------------


def test_profile_file_round_trip(tmp_path):
    profile = aggregate_text(SERVICE_TRACE)
    path = str(tmp_path / "profile.json")
    ProfileSerializer.dump(profile, path)
    doc = orjson.loads(open(path, "rb").read())
    assert doc["version"] == 1
    assert ProfileSerializer.load(path) == profile


@pytest.mark.parametrize(
    "data",
    [
        b"not json",
        b"[]",
        b'{"version": 1}',
        b'{"version": 2, "profile": {}}',
        b'{"version": 1, "profile": {"bind_ports": [["AF_INET", "tcp", "x"]]}}',
    ],
)
def test_profile_loads_rejects(data):
    with pytest.raises(ValueError):
        ProfileSerializer.loads(data)


def test_load_and_merge(tmp_path):
    a = BehavioralProfile(syscalls={"read"}, flags={"ptrace"})
    b = BehavioralProfile(syscalls={"write"})
    paths = [str(tmp_path / "a.json"), str(tmp_path / "b.json")]
    ProfileSerializer.dump(a, paths[0])
    ProfileSerializer.dump(b, paths[1])
    assert ProfileSerializer.load_and_merge(paths) == a.merge(b)
    assert ProfileSerializer.load_and_merge([]) == BehavioralProfile()


# ------------------ Reports ---------------------


def test_report(tmp_path):
    profile = aggregate_text(SERVICE_TRACE)
    ds = synthesize(profile, default_catalog())
    report = build_report(ds, profile)
    assert set(report) == {"directives", "options", "profile"}
    assert ["ProtectSystem", "strict"] in report["options"]

    path = str(tmp_path / "report.json")
    dump_report(report, path)
    assert orjson.loads(open(path, "rb").read()) == report
