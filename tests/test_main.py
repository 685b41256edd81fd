# mypy: ignore-errors
"""End to end tests of the main function."""

import sys
from datetime import datetime
from pathlib import Path

import pytest
from conftest import create_files

import rotate_backups
from rotate_backups import FileCouldNotBeDeletedError, IntegrityCheckFailedError, main

SCENARIO_FILES = (
    "db-20240101.sql.gz",  # monthly, older than 12 months
    "db-20250101.sql.gz",  # monthly, within 12 months
    "db-20250818.sql.gz",  # monday, older than 28 days
    "db-20251020.sql.gz",  # monday, within 28 days
    "db-20251023.sql.gz",  # thursday, older than 6 days
    "db-20251029.sql.gz",  # wednesday, within 6 days
    "db-20250230.sql.gz",  # invalid date
    "nodate.sql.gz",  # no date
    "readme.txt",  # not matched by the glob
)


@pytest.fixture(autouse=True)
def fixed_now(monkeypatch, now: datetime) -> datetime:
    monkeypatch.setattr(rotate_backups, "SCRIPT_START", now)
    return now


def _run(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["rotate_backups.py", *argv])
    main()


def _names(directory: Path) -> set[str]:
    return {p.name for p in directory.iterdir()}


def test_dry_run_reports_and_changes_nothing(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, *SCENARIO_FILES)
    before = _names(backup_dir)

    _run(monkeypatch, "--dir", str(backup_dir))

    assert _names(backup_dir) == before
    out, err = capsys.readouterr()
    assert out.splitlines() == [
        "Rotation policy:",
        "  Monthly (1st): keep since 2024-10-30",
        "  Mondays:       keep since 2025-10-02",
        "  Others:        keep since 2025-10-24",
        "",
        "delete  db-20240101.sql.gz  (2024-01-01; monthly>12mo)",
        "keep    db-20250101.sql.gz  (2025-01-01; monthly<=12mo)",
        "delete  db-20250818.sql.gz  (2025-08-18; monday>28d)",
        "keep    db-20251020.sql.gz  (2025-10-20; monday<=28d)",
        "delete  db-20251023.sql.gz  (2025-10-23; daily>6d)",
        "keep    db-20251029.sql.gz  (2025-10-29; daily<=6d)",
        "",
        "Summary:",
        "  Keep   : 3 file(s)",
        "  Delete : 3 file(s)",
        "  Skip   : 2 file(s)",
        "",
        "Dry-run complete. Use --delete to actually remove files.",
    ]
    assert "[SKIP] invalid date: db-20250230.sql.gz" in err
    assert "[SKIP] no date: nodate.sql.gz" in err


def test_delete_removes_only_expired_files(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, *SCENARIO_FILES)

    _run(monkeypatch, "--delete", "--dir", str(backup_dir))

    assert _names(backup_dir) == {
        "db-20250101.sql.gz",
        "db-20251020.sql.gz",
        "db-20251029.sql.gz",
        "db-20250230.sql.gz",
        "nodate.sql.gz",
        "readme.txt",
    }
    assert "Deleted 3 file(s)." in capsys.readouterr().out


def test_delete_twice_is_idempotent(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, *SCENARIO_FILES)

    _run(monkeypatch, "--delete", "--dir", str(backup_dir))
    survivors = _names(backup_dir)
    capsys.readouterr()

    _run(monkeypatch, "--delete", "--dir", str(backup_dir))

    assert _names(backup_dir) == survivors
    out = capsys.readouterr().out
    assert "  Delete : 0 file(s)" in out
    assert "Deleted 0 file(s)." in out


def test_delete_tolerates_concurrently_removed_file(backup_dir, monkeypatch, capsys) -> None:
    """A file deleted by someone else between classification and deletion is no error."""
    create_files(backup_dir, "db-20240101.sql.gz", "db-20240201.sql.gz")

    original = rotate_backups.RotationLogic.process_rotation_logic

    def process_and_remove(self):
        result = original(self)
        (backup_dir / "db-20240101.sql.gz").unlink()
        return result

    monkeypatch.setattr(rotate_backups.RotationLogic, "process_rotation_logic", process_and_remove)

    _run(monkeypatch, "--delete", "--dir", str(backup_dir))

    assert _names(backup_dir) == set()
    captured = capsys.readouterr()
    assert "Deleted 1 file(s)." in captured.out
    assert captured.err == ""


def test_custom_glob(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, "db-20240101.sql.gz", "app-20240101.tar")

    _run(monkeypatch, "--delete", "--dir", str(backup_dir), "--glob", "*.tar")

    assert _names(backup_dir) == {"db-20240101.sql.gz"}


def test_no_files_matched(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, "readme.txt")

    _run(monkeypatch, "--dir", str(backup_dir))

    out = capsys.readouterr().out
    assert f"No files matched '{backup_dir}/*.sql.gz'." in out
    assert "Summary:" not in out


def test_missing_directory_exits_non_zero(tmp_path, monkeypatch, capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "--dir", str(tmp_path / "missing"))
    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert "[ERROR] Directory not found" in captured.err
    assert "Rotation policy" not in captured.out


def test_unknown_flag_exits_non_zero(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, "db-20240101.sql.gz")
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "--dir", str(backup_dir), "--force")
    assert exc.value.code == 2
    assert "Unknown option: --force" in capsys.readouterr().err
    assert (backup_dir / "db-20240101.sql.gz").exists()


def test_error_verbosity_is_silent(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, "db-20240101.sql.gz", "nodate.sql.gz")

    _run(monkeypatch, "--delete", "--dir", str(backup_dir), "--verbose", "error")

    assert _names(backup_dir) == {"nodate.sql.gz"}
    assert capsys.readouterr() == ("", "")


def test_debug_output(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, "db-20251029.sql.gz")

    _run(monkeypatch, "--dir", str(backup_dir), "-V")

    err = capsys.readouterr().err
    assert "[DEBUG] Parsed arguments" in err
    assert "[DEBUG] Cutoffs (now: 2025-10-30 00:00:00)" in err
    assert '[DEBUG] Files found: "db-20251029.sql.gz"' in err


@pytest.mark.parametrize(
    "exception, exit_code",
    [
        (OSError("io"), 1),
        (ValueError("value"), 2),
        (FileCouldNotBeDeletedError("delete"), 6),
        (IntegrityCheckFailedError("integrity"), 7),
        (RuntimeError("other"), 9),
    ],
)
def test_exception_handling(backup_dir, monkeypatch, capsys, exception, exit_code) -> None:
    def failing_read_filelist(args, logger):
        raise exception

    monkeypatch.setattr(rotate_backups, "read_filelist", failing_read_filelist)

    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "--dir", str(backup_dir))
    assert exc.value.code == exit_code
    assert str(exception) in capsys.readouterr().err


def test_delete_leaves_hidden_files_alone(backup_dir, monkeypatch, capsys) -> None:
    create_files(backup_dir, ".partial-20200102.sql.gz", "db-20200102.sql.gz")

    _run(monkeypatch, "--delete", "--dir", str(backup_dir))

    assert _names(backup_dir) == {".partial-20200102.sql.gz"}
    out = capsys.readouterr().out
    assert ".partial-20200102.sql.gz" not in out
    assert "Deleted 1 file(s)." in out
