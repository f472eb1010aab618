"""
Pytest configuration and fixtures for delta server tests.

The registry and the delta computers are replaced with in-memory fakes, so
the tests exercise coordination, locking and HTTP mapping without buildah.
"""
import os

import pytest

from deltaserver.commands import CommandError
from deltaserver.delta import DeltaFailure, DeltaProgress, DeltaResult

SRC = "registry.example.com/v2/aaaaaaaaaaaaaaaa1111"
DEST = "registry.example.com/v2/bbbbbbbb"
DELTA_KEY = "bbbbbbbb:delta-aaaaaaaaaaaaaaaa"
DELTA_PATH = "registry.example.com/v2/bbbbbbbb:delta-aaaaaaaaaaaaaaaa"
JWT_SECRET = "test-secret-key-256-bits-long-xx"


class FakeRegistry:
    """In-memory registry recording every call."""

    def __init__(self):
        self.calls = []
        self.pushed = set()
        self.fail_pull = set()
        self.fail_push = False

    def pull(self, image):
        self.calls.append(("pull", image))
        if image in self.fail_pull:
            raise CommandError(f"buildah pull {image}", 125, "manifest unknown")

    def push(self, image):
        self.calls.append(("push", image))
        if self.fail_push:
            raise CommandError(f"buildah push {image}", 125, "denied")
        self.pushed.add(image)

    def tag(self, image, new_name):
        self.calls.append(("tag", image, new_name))

    def remove(self, *images):
        self.calls.append(("remove", *images))

    def tag_exists(self, image):
        return image in self.pushed

    def export(self, image, archive_path):
        self.calls.append(("export", image))
        with open(archive_path, "w") as f:
            f.write(image)

    def bud(self, dockerfile, tag, context_dir):
        self.calls.append(("bud", os.path.basename(dockerfile), tag))

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeComputer:
    """
    Delta computer producing a fixed artifact.

    With artifact=None a patch file holding `content` is written to the
    working directory and its path is the result (patch-file format);
    otherwise the given artifact name is returned (image format).
    """

    def __init__(self, artifact=None, content=b"delta-bytes"):
        self.artifact = artifact
        self.content = content
        self.fail = False
        self.gate = None
        self.calls = []

    def compute(self, src, dest, workdir):
        self.calls.append((src, dest))
        yield DeltaProgress("computing")
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            yield DeltaFailure("diff exited with code 1")
            return
        if self.artifact is not None:
            yield DeltaResult(self.artifact)
            return
        path = os.path.join(workdir, "delta.patch")
        with open(path, "wb") as f:
            f.write(self.content)
        yield DeltaResult(path)


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Config pointing at temporary directories with short polling budgets."""
    monkeypatch.setenv("WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("STORE_DIR", str(tmp_path / "store"))
    monkeypatch.setenv("BUSY_TIMEOUT", "0.3")
    monkeypatch.setenv("WAIT_TIMEOUT", "5")
    monkeypatch.setenv("POLL_INTERVAL", "0.05")
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("JWT_PUBLIC_KEY", raising=False)
    monkeypatch.delenv("BASE_DOMAIN", raising=False)
    from deltaserver.config import Config
    return Config()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def image_computer():
    return FakeComputer(artifact="localhost/deltaserver/delta-test")


@pytest.fixture
def patch_computer():
    return FakeComputer()


@pytest.fixture
def context(config, registry, image_computer, patch_computer):
    from deltaserver.context import build_context
    ctx = build_context(
        config,
        registry=registry,
        image_computer=image_computer,
        patch_computer=patch_computer,
    )
    yield ctx
    ctx.shutdown(wait=True)


@pytest.fixture
def client(context):
    from deltaserver.routes import create_app
    app = create_app(context)
    app.config["TESTING"] = True
    return app.test_client()


def wait_for_unlock(coordinator, key, timeout=5.0):
    """Block until the build lock for key is gone."""
    assert not coordinator.locks.wait_until_free(key, timeout), f"lock {key} still held"
