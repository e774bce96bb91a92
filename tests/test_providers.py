"""Unit tests for the built-in file and shell providers."""

import os
import stat

import pytest

from chisel.diff import Action, compute_diff
from chisel.errors import (
    ApplyError,
    ModuleValidationError,
    OperationTimeoutError,
    ReadError,
)
from chisel.plugins.base import OperationContext
from chisel.plugins.providers import FileProvider, ShellProvider

from conftest import make_resource


def ctx_for(resource, timeout=None):
    return OperationContext.with_timeout(resource.resource_id, timeout)


def converge(provider, resource):
    """Plan and apply one resource the way the engine does."""
    current = provider.read(ctx_for(resource), resource)
    diff = compute_diff(resource, current)
    if diff.has_changes:
        provider.apply(ctx_for(resource), resource, diff)
    return diff


class TestFileProvider:
    """Tests for FileProvider."""

    @pytest.fixture
    def provider(self):
        return FileProvider()

    def test_read_missing(self, provider, tmp_path):
        resource = make_resource("file.motd", path=str(tmp_path / "motd"))
        assert provider.read(ctx_for(resource), resource) is None

    def test_read_existing(self, provider, tmp_path):
        path = tmp_path / "motd"
        path.write_text("hello\n")
        os.chmod(path, 0o640)
        resource = make_resource("file.motd", path=str(path), content="hello\n")

        current = provider.read(ctx_for(resource), resource)

        assert current["content"] == "hello\n"
        assert current["mode"] == "0640"
        assert current["size"] == 6

    def test_read_directory_fails(self, provider, tmp_path):
        resource = make_resource("file.dir", path=str(tmp_path))
        with pytest.raises(ReadError):
            provider.read(ctx_for(resource), resource)

    def test_create_then_noop(self, provider, tmp_path):
        path = tmp_path / "etc" / "motd"
        resource = make_resource(
            "file.motd", path=str(path), content="welcome\n", mode="0600"
        )

        diff = converge(provider, resource)

        assert diff.action == Action.CREATE
        assert path.read_text() == "welcome\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert converge(provider, resource).action == Action.NOOP

    def test_update_content(self, provider, tmp_path):
        path = tmp_path / "motd"
        path.write_text("old\n")
        resource = make_resource("file.motd", path=str(path), content="new\n")

        diff = converge(provider, resource)

        assert diff.action == Action.UPDATE
        assert diff.changes == {"content": {"from": "old\n", "to": "new\n"}}
        assert path.read_text() == "new\n"

    def test_delete(self, provider, tmp_path):
        path = tmp_path / "motd"
        path.write_text("bye\n")
        resource = make_resource("file.motd", path=str(path), state="absent")

        assert converge(provider, resource).action == Action.DELETE
        assert not path.exists()

    def test_rollback_restores_snapshot(self, provider, tmp_path):
        path = tmp_path / "motd"
        path.write_text("original\n")
        resource = make_resource("file.motd", path=str(path), content="changed\n")
        snapshot = provider.read(ctx_for(resource), resource)
        diff = converge(provider, resource)

        provider.apply(ctx_for(resource), resource, diff.inverse(snapshot))

        assert path.read_text() == "original\n"

    def test_delete_rollback_restores_content(self, provider, tmp_path):
        path = tmp_path / "keep"
        path.write_text("precious data")
        os.chmod(path, 0o600)
        resource = make_resource("file.keep", path=str(path), state="absent")
        snapshot = provider.read(ctx_for(resource), resource)
        diff = converge(provider, resource)
        assert not path.exists()

        provider.apply(ctx_for(resource), resource, diff.inverse(snapshot))

        assert path.read_text() == "precious data"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_undecodable_content_round_trips(self, provider, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"\xff\xfe raw")
        resource = make_resource("file.blob", path=str(path), state="absent")
        snapshot = provider.read(ctx_for(resource), resource)
        diff = converge(provider, resource)

        provider.apply(ctx_for(resource), resource, diff.inverse(snapshot))

        assert path.read_bytes() == b"\xff\xfe raw"

    def test_root_prefix(self, tmp_path):
        provider = FileProvider(root=str(tmp_path))
        resource = make_resource("file.motd", path="/etc/motd", content="x")

        converge(provider, resource)

        assert (tmp_path / "etc" / "motd").read_text() == "x"

    def test_validate_requires_path(self, provider):
        with pytest.raises(ModuleValidationError):
            provider.validate(make_resource("file.motd", content="x"))

    def test_validate_mode_format(self, provider):
        with pytest.raises(ModuleValidationError):
            provider.validate(make_resource("file.motd", path="/etc/motd", mode="644"))


class TestShellProvider:
    """Tests for ShellProvider."""

    @pytest.fixture
    def provider(self):
        return ShellProvider()

    def test_creates_guard(self, provider, tmp_path):
        marker = tmp_path / "done"
        resource = make_resource(
            "shell.init", command=f"touch {marker}", creates=str(marker)
        )

        assert converge(provider, resource).action == Action.CREATE
        assert marker.exists()
        assert converge(provider, resource).action == Action.NOOP

    def test_unless_guard(self, provider, tmp_path):
        resource = make_resource("shell.check", command="false", unless="true")
        assert converge(provider, resource).action == Action.NOOP

    def test_command_failure(self, provider, tmp_path):
        resource = make_resource("shell.broken", command="echo nope >&2; exit 3")
        with pytest.raises(ApplyError, match="exited with 3: nope"):
            converge(provider, resource)

    def test_env_and_cwd(self, provider, tmp_path):
        resource = make_resource(
            "shell.write",
            command='echo "$GREETING" > out.txt',
            cwd=str(tmp_path),
            env={"GREETING": "hi"},
            creates=str(tmp_path / "out.txt"),
        )

        converge(provider, resource)

        assert (tmp_path / "out.txt").read_text() == "hi\n"

    def test_undo_on_delete(self, provider, tmp_path):
        marker = tmp_path / "done"
        marker.touch()
        resource = make_resource(
            "shell.init",
            command=f"touch {marker}",
            creates=str(marker),
            undo=f"rm {marker}",
            state="absent",
        )

        assert converge(provider, resource).action == Action.DELETE
        assert not marker.exists()

    def test_delete_without_undo_fails(self, provider, tmp_path):
        marker = tmp_path / "done"
        marker.touch()
        resource = make_resource(
            "shell.init", command="true", creates=str(marker), state="absent"
        )
        with pytest.raises(ApplyError, match="no undo command"):
            converge(provider, resource)

    def test_timeout(self, provider):
        resource = make_resource("shell.slow", command="sleep 5")
        diff = compute_diff(resource, None)
        with pytest.raises(OperationTimeoutError):
            provider.apply(ctx_for(resource, timeout=0.1), resource, diff)

    def test_validate_requires_command(self, provider):
        with pytest.raises(ModuleValidationError):
            provider.validate(make_resource("shell.empty", creates="/tmp/x"))
