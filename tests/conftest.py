import os
import pathlib
import subprocess
import sys
import uuid

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
CHILD_SCRIPT = pathlib.Path(__file__).resolve().parent / "instance_child.py"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from schemas import Settings  # noqa: E402


@pytest.fixture
def test_settings(tmp_path):
    model = Settings(
        lock_dir=tmp_path / "locks",
        accept_poll_interval_ms=50,
        connect_timeout_ms=3000,
        read_timeout_ms=2000,
    )
    model.process()
    return model


@pytest.fixture
def unique_name():
    return f"test-{uuid.uuid4().hex}"


@pytest.fixture
def spawn_child():
    """Start tests/instance_child.py in a fresh interpreter, killed on teardown."""
    children = []

    def _spawn(*args: str) -> subprocess.Popen:
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            [str(SRC_DIR)] + [p for p in [env.get("PYTHONPATH")] if p]
        )
        proc = subprocess.Popen(
            [sys.executable, str(CHILD_SCRIPT), *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
        children.append(proc)
        return proc

    yield _spawn

    for proc in children:
        if proc.poll() is None:
            proc.kill()
            proc.communicate()
