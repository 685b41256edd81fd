from datetime import datetime
from pathlib import Path

import pytest


@pytest.fixture
def now() -> datetime:
    """Fixed 'now' (Thursday, midnight) used by the scenario tests."""
    return datetime(2025, 10, 30)


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "backup"
    directory.mkdir()
    return directory


def create_files(directory: Path, *names: str) -> list[Path]:
    files: list[Path] = []
    for name in names:
        file = directory / name
        file.write_text(name)
        files.append(file)
    return files


@pytest.fixture
def symlinks_supported(tmp_path: Path) -> bool:
    try:
        target = tmp_path / "symlink-target"
        target.mkdir()
        link = tmp_path / "symlink-link"
        link.symlink_to(target)
        return True
    except (OSError, NotImplementedError):
        return False
