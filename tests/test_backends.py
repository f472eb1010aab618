"""
Tests for the artifact backends and delta event handling.

Run with: pytest tests/test_backends.py -v
"""
import os

import pytest

from deltaserver.backends import ImageBackend, PatchFileBackend
from deltaserver.commands import CommandError
from deltaserver.delta import DeltaProgress, collect_artifact
from deltaserver.errors import BuildError, NotFoundError
from deltaserver.validation import resolve_delta_key

from conftest import SRC, DEST, DELTA_KEY, DELTA_PATH, FakeComputer, FakeRegistry

LOCAL_TAG = "localhost/deltaserver/delta-test"


@pytest.fixture
def delta():
    return resolve_delta_key(SRC, DEST)


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "build"
    path.mkdir()
    return str(path)


class TestCollectArtifact:

    def test_sequence_without_result_is_a_failure(self):
        with pytest.raises(BuildError, match="without a result"):
            collect_artifact(iter([DeltaProgress("one"), DeltaProgress("two")]), DELTA_KEY)


class TestImageBackend:

    def test_build_tags_pushes_and_removes_local_copy(self, delta, workdir):
        registry = FakeRegistry()
        backend = ImageBackend(registry, FakeComputer(artifact=LOCAL_TAG))

        assert backend.build(delta, workdir) == DELTA_PATH

        assert registry.called("tag") == [("tag", LOCAL_TAG, DELTA_PATH)]
        assert registry.called("push") == [("push", DELTA_PATH)]
        assert registry.called("remove") == [("remove", LOCAL_TAG, DELTA_PATH)]

    def test_exists_follows_registry(self, delta, workdir):
        registry = FakeRegistry()
        backend = ImageBackend(registry, FakeComputer(artifact=LOCAL_TAG))
        assert not backend.exists(delta)

        backend.build(delta, workdir)

        assert backend.exists(delta)

    def test_unreachable_registry_is_a_build_error(self, delta):
        registry = FakeRegistry()

        def fail_lookup(image):
            raise CommandError("buildah login registry.example.com", 125, "unauthorized")

        registry.tag_exists = fail_lookup
        backend = ImageBackend(registry, FakeComputer(artifact=LOCAL_TAG))

        with pytest.raises(BuildError) as exc_info:
            backend.exists(delta)

        assert exc_info.value.context["key"] == DELTA_KEY
        assert "unauthorized" not in exc_info.value.message

    def test_push_failure_still_removes_local_copy(self, delta, workdir):
        registry = FakeRegistry()
        registry.fail_push = True
        backend = ImageBackend(registry, FakeComputer(artifact=LOCAL_TAG))

        with pytest.raises(CommandError):
            backend.build(delta, workdir)

        assert registry.called("remove") == [("remove", LOCAL_TAG, DELTA_PATH)]
        assert not backend.exists(delta)

    def test_failed_computation_publishes_nothing(self, delta, workdir):
        registry = FakeRegistry()
        computer = FakeComputer(artifact=LOCAL_TAG)
        computer.fail = True
        backend = ImageBackend(registry, computer)

        with pytest.raises(BuildError):
            backend.build(delta, workdir)

        assert registry.called("tag") == []
        assert registry.called("push") == []


class TestPatchFileBackend:

    def test_build_stores_patch_under_key(self, delta, workdir, tmp_path):
        backend = PatchFileBackend(str(tmp_path / "store"), FakeComputer(content=b"\x00patch\xff"))

        assert backend.build(delta, workdir) == DELTA_KEY

        assert backend.exists(delta)
        with open(backend.path_for(DELTA_KEY), "rb") as f:
            assert f.read() == b"\x00patch\xff"

    def test_fetch_reports_exact_size(self, delta, workdir, tmp_path):
        content = os.urandom(3 * 1024 * 1024 + 17)
        backend = PatchFileBackend(str(tmp_path / "store"), FakeComputer(content=content))
        backend.build(delta, workdir)

        path, size = backend.fetch(DELTA_KEY)

        assert size == len(content)
        assert os.path.getsize(path) == len(content)

    def test_fetch_unknown_key(self, tmp_path):
        backend = PatchFileBackend(str(tmp_path / "store"), FakeComputer())

        with pytest.raises(NotFoundError):
            backend.fetch(DELTA_KEY)

    def test_failed_computation_stores_nothing(self, delta, workdir, tmp_path):
        computer = FakeComputer()
        computer.fail = True
        store = tmp_path / "store"
        backend = PatchFileBackend(str(store), computer)

        with pytest.raises(BuildError, match="Delta computation failed"):
            backend.build(delta, workdir)

        assert not backend.exists(delta)
        assert os.listdir(store) == []

    def test_store_leaves_no_partial_files(self, tmp_path):
        source = tmp_path / "delta.patch"
        source.write_bytes(b"abc")
        store = tmp_path / "store"
        backend = PatchFileBackend(str(store), FakeComputer())

        backend.store(DELTA_KEY, str(source))

        assert os.listdir(store) == [f"{DELTA_KEY}.delta"]
