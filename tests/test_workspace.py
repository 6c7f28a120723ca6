import logging
import pathlib
import shutil

import pytest

from apk_repack.workspace import Stage, Workspace, WorkspaceError


def test_stage_dirs_are_created_lazily(tmp_path: pathlib.Path):
    ws = Workspace(root=tmp_path / "work")
    assert ws.patched_dir == tmp_path / "work" / "cli" / "patched"
    assert ws.patched_dir.exists() is False

    created = ws.stage_dir(Stage.ALIGNED)
    assert created == ws.aligned_dir
    assert created.is_dir() is True
    assert ws.signed_dir.exists() is False


def test_stage_without_directory_is_rejected(tmp_path: pathlib.Path):
    with pytest.raises(WorkspaceError):
        Workspace(root=tmp_path).stage_dir(Stage.OUTPUT)


def test_reset_removes_stale_output(tmp_path: pathlib.Path):
    ws = Workspace(root=tmp_path / "work")
    stale = ws.stage_dir(Stage.SIGNED) / "base.apk"
    stale.write_bytes(b"old")

    ws.reset()
    assert ws.root.exists() is False
    # resetting a missing root is fine
    ws.reset()


def test_reset_failure_is_fatal(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    ws = Workspace(root=tmp_path / "work")
    ws.stage_dir(Stage.PATCHED)

    def boom(path, *args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(shutil, "rmtree", boom)
    with pytest.raises(WorkspaceError):
        ws.reset()


def test_unforced_delete_respects_low_storage(tmp_path: pathlib.Path):
    ws = Workspace(root=tmp_path / "work", low_storage=False)
    directory = ws.stage_dir(Stage.PATCHED)

    assert ws.delete(directory) is False
    assert directory.is_dir() is True

    assert ws.delete(directory, force=True) is True
    assert directory.exists() is False


def test_low_storage_deletes_without_force(tmp_path: pathlib.Path):
    ws = Workspace(root=tmp_path / "work", low_storage=True)
    directory = ws.stage_dir(Stage.ALIGNED)
    (directory / "base.apk").write_bytes(b"x")

    assert ws.delete(directory) is True
    assert directory.exists() is False
    assert ws.delete(directory) is True


def test_delete_failure_is_logged_not_raised(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
):
    ws = Workspace(root=tmp_path / "work", low_storage=True)
    directory = ws.stage_dir(Stage.SIGNED)

    def boom(path, *args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(shutil, "rmtree", boom)
    logger = logging.getLogger("apk_repack.test")
    with caplog.at_level(logging.ERROR, logger="apk_repack.test"):
        assert ws.delete(directory, logger=logger) is False
    assert "failed to delete directory" in caplog.text
