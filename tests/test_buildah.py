"""
Tests for the buildah registry wrapper.

The command runner is replaced, so these check the command lines only.

Run with: pytest tests/test_buildah.py -v
"""
import os

import pytest

from deltaserver import buildah as buildah_module
from deltaserver.buildah import Buildah, IMAGE_MANIFEST_TYPES
from deltaserver.commands import CommandError

IMAGE = "registry.example.com/v2/bbbbbbbb"


class Recorder:
    """Stand-in for run_command that records command lines."""

    def __init__(self):
        self.commands = []
        self.error = None

    def __call__(self, cmd, description, timeout=None, input=None):
        self.commands.append((cmd, input))
        if cmd[1] == "login":
            authfile = cmd[cmd.index("--authfile") + 1]
            with open(authfile, "w") as f:
                f.write("{}")
        if self.error is not None:
            raise self.error
        return ""

    def subcommands(self):
        return [cmd[1] for cmd, _ in self.commands]


@pytest.fixture
def recorder(monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(buildah_module, "run_command", recorder)
    return recorder


class TestAnonymous:

    def test_pull_without_credentials_skips_login(self, recorder, tmp_path):
        client = Buildah(str(tmp_path))

        client.pull(IMAGE)

        assert recorder.commands == [
            (["buildah", "pull", "--storage-driver", "vfs", "--quiet", IMAGE], None),
        ]

    def test_remove_without_images_runs_nothing(self, recorder, tmp_path):
        Buildah(str(tmp_path)).remove()

        assert recorder.commands == []

    def test_export_writes_oci_archive(self, recorder, tmp_path):
        Buildah(str(tmp_path)).export(IMAGE, "/work/src.tar")

        cmd, _ = recorder.commands[0]
        assert cmd[1] == "push"
        assert cmd[-2:] == [IMAGE, "oci-archive:/work/src.tar"]

    def test_storage_driver_is_configurable(self, recorder, tmp_path):
        Buildah(str(tmp_path), storage_driver="overlay").tag("a", "b")

        cmd, _ = recorder.commands[0]
        assert cmd == ["buildah", "tag", "--storage-driver", "overlay", "a", "b"]


class TestLogin:

    def make_client(self, tmp_path):
        return Buildah(str(tmp_path), registry_host="registry.example.com", username="deltas", password="s3cret")

    def test_logs_in_once_with_password_on_stdin(self, recorder, tmp_path):
        client = self.make_client(tmp_path)

        client.pull(IMAGE)
        client.push(IMAGE)

        assert recorder.subcommands() == ["login", "pull", "push"]
        login, password = recorder.commands[0]
        assert "--password-stdin" in login
        assert "s3cret" not in login
        assert password == "s3cret"

    def test_commands_share_authfile(self, recorder, tmp_path):
        client = self.make_client(tmp_path)

        client.pull(IMAGE)

        pull, _ = recorder.commands[1]
        assert pull[pull.index("--authfile") + 1] == os.path.join(str(tmp_path), "auth.json")

    def test_failed_login_is_retried(self, recorder, tmp_path):
        client = self.make_client(tmp_path)
        recorder.error = CommandError("buildah login", 1, "unauthorized")

        with pytest.raises(CommandError):
            client.pull(IMAGE)

        recorder.error = None
        client.pull(IMAGE)

        assert recorder.subcommands() == ["login", "login", "pull"]


class TestTagExists:

    def test_manifest_list_found(self, recorder, tmp_path):
        assert Buildah(str(tmp_path)).tag_exists(IMAGE)

    @pytest.mark.parametrize("media_type", IMAGE_MANIFEST_TYPES)
    def test_plain_image_manifest_found(self, recorder, tmp_path, media_type):
        recorder.error = CommandError(
            "buildah manifest inspect", 125,
            f'Error: parsing manifest blob as list: unsupported format "{media_type}"',
        )

        assert Buildah(str(tmp_path)).tag_exists(IMAGE)

    def test_unknown_manifest_is_absent(self, recorder, tmp_path):
        recorder.error = CommandError("buildah manifest inspect", 125, "manifest unknown")

        assert not Buildah(str(tmp_path)).tag_exists(IMAGE)
