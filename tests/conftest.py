# tests/conftest.py
import random
import string
import textwrap

import pytest

UNIT_DIRS = ["etc/systemd/system", "run/systemd/system", "usr/lib/systemd/system"]


def create_root(root):
    for d in UNIT_DIRS:
        (root / d).mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def fake_root(tmp_path):
    # Minimal filesystem root holding the systemd unit directories
    return create_root(tmp_path / "root")


@pytest.fixture
def write_unit(fake_root):
    def _write(name, body, unit_dir="usr/lib/systemd/system"):
        path = fake_root / unit_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body).lstrip("\n"))
        return path

    return _write


@pytest.fixture
def write_trace(tmp_path):
    def _write(text, name="run.strace"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text).strip("\n") + "\n")
        return path

    return _write


@pytest.fixture
def rng(request):
    # Seeded per test so failures replay
    return random.Random(request.node.name)


@pytest.fixture
def rnd_name(length=8):
    letters = string.ascii_lowercase
    return ''.join(random.choices(letters, k=length))
