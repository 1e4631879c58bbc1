import datetime as dt
import stat
import tarfile
from types import SimpleNamespace

import pytest

import project_sync
from project_sync import (
    ArchiveError,
    Settings,
    create_archive,
    execute_directive,
    resolve_operation,
    run_sync_tool,
)

WHEN = dt.datetime(2024, 1, 2, 3, 4, 5)


@pytest.fixture
def source_tree(tmp_path):
    src = tmp_path / "src"
    (src / "subdir").mkdir(parents=True)
    (src / "file1.txt").write_text("Test content for source 1\n")
    (src / "subdir" / "sub1.txt").write_text("Subdirectory content 1\n")
    return src


def test_skip_creates_directory_only(tmp_path, settings, sync_calls, log_records):
    dest = tmp_path / "root" / "proj" / "out"
    result = execute_directive("/src", dest, resolve_operation("skip"), settings)

    assert result.ok
    assert dest.is_dir()
    assert list(dest.iterdir()) == []
    assert sync_calls == []
    assert ("INFO", "SKIP: Skipping entry completely") in log_records


def test_transfer_passes_flags(tmp_path, settings, sync_calls):
    dest = tmp_path / "root" / "p" / "data"
    result = execute_directive("/src/", dest, resolve_operation("move"), settings)

    assert result.ok
    assert dest.is_dir()
    assert sync_calls == [("/src/", dest, "--remove-source-files")]


def test_transfer_with_empty_source_is_noop(tmp_path, settings, sync_calls):
    dest = tmp_path / "root" / "p" / "data"
    result = execute_directive("", dest, resolve_operation("copy"), settings)

    assert result.ok
    assert result.detail == "empty source"
    assert dest.is_dir()
    assert sync_calls == []


def test_transfer_failure_is_not_fatal(tmp_path, settings, monkeypatch):
    monkeypatch.setattr(project_sync, "run_sync_tool", lambda *a: 23)
    result = execute_directive("/src", tmp_path / "d", resolve_operation("copy"), settings)
    assert not result.ok
    assert result.detail == "exit status 23"


def test_transfer_missing_binary_is_not_fatal(tmp_path):
    settings = Settings(destination_root=tmp_path, rsync_binary=str(tmp_path / "no-such-rsync"))
    result = execute_directive("/src", tmp_path / "d", resolve_operation("copy"), settings)
    assert not result.ok


def test_run_sync_tool_command(tmp_path, settings, monkeypatch):
    seen = []

    def fake_run(cmd, check):
        seen.append(cmd)
        return SimpleNamespace(returncode=0)

    monkeypatch.setattr(project_sync.subprocess, "run", fake_run)
    dest = tmp_path / "dest"

    assert run_sync_tool("/data/src/", dest, "--dry-run", settings) == 0
    assert run_sync_tool("/data/src", dest, "", settings) == 0
    assert seen == [
        ["rsync", "-av", "--progress", "--dry-run", "/data/src/", str(dest)],
        ["rsync", "-av", "--progress", "/data/src", str(dest)],
    ]


def test_permit_sets_755(tmp_path, settings):
    dest = tmp_path / "shared"
    dest.mkdir(mode=0o700)
    result = execute_directive("", dest, resolve_operation("permit"), settings)

    assert result.ok
    assert stat.S_IMODE(dest.stat().st_mode) == 0o755


def test_permit_on_existing_file_warns(tmp_path, settings, log_records):
    dest = tmp_path / "not_a_dir"
    dest.write_text("x")
    result = execute_directive("", dest, resolve_operation("permit"), settings)

    assert result.ok
    assert result.detail == "not a directory"
    assert dest.is_file()
    assert any(level == "WARNING" and "not a directory" in msg for level, msg in log_records)


def test_mkdir_failure_is_not_fatal(tmp_path, settings, sync_calls):
    dest = tmp_path / "occupied"
    dest.write_text("x")
    result = execute_directive("/src", dest, resolve_operation("copy"), settings)

    assert not result.ok
    assert result.action == "mkdir"
    assert sync_calls == []


def test_archive_created(tmp_path, settings, source_tree):
    dest = tmp_path / "root" / "backup" / "archived"
    result = execute_directive(str(source_tree), dest, resolve_operation("archive"), settings, when=WHEN)

    archive = dest / "src_20240102_030405.tar.gz"
    assert result.ok
    assert result.detail == str(archive)
    with tarfile.open(archive, "r:gz") as tar:
        names = set(tar.getnames())
    assert {"src", "src/file1.txt", "src/subdir/sub1.txt"} <= names


def test_archive_trailing_slash_uses_basename(tmp_path, settings, source_tree):
    dest = tmp_path / "out"
    result = execute_directive(str(source_tree) + "/", dest, resolve_operation("archive"), settings, when=WHEN)
    assert result.ok
    assert (dest / "src_20240102_030405.tar.gz").is_file()


def test_archive_with_empty_source_warns(tmp_path, settings):
    dest = tmp_path / "out"
    result = execute_directive("", dest, resolve_operation("archive"), settings)
    assert result.ok
    assert result.detail == "empty source"
    assert list(dest.iterdir()) == []


def test_archive_missing_source_is_fatal(tmp_path, settings):
    with pytest.raises(ArchiveError):
        execute_directive(str(tmp_path / "gone"), tmp_path / "out", resolve_operation("archive"), settings)
    assert list((tmp_path / "out").iterdir()) == []


def test_archive_into_source_refused(tmp_path, source_tree):
    inside = source_tree / "archives"
    inside.mkdir()
    with pytest.raises(ArchiveError):
        create_archive(source_tree, inside, when=WHEN, timestamp_format="%Y%m%d_%H%M%S")


def test_archive_destination_inside_source_is_not_created(settings, source_tree):
    inside = source_tree / "archives"
    with pytest.raises(ArchiveError):
        execute_directive(str(source_tree), inside, resolve_operation("archive"), settings, when=WHEN)
    assert not inside.exists()


def test_archive_mkdir_failure_is_fatal(tmp_path, settings, source_tree):
    dest = tmp_path / "occupied"
    dest.write_text("x")
    with pytest.raises(ArchiveError, match="Failed to create archive destination"):
        execute_directive(str(source_tree), dest, resolve_operation("archive"), settings, when=WHEN)
    assert dest.is_file()
