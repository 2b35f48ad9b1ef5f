from pathlib import Path

import pytest

from cookbooks.search.libs.progress import ProgressLedger, ProgressLedgerError


def test_load_without_file_returns_nothing(tmp_path: Path):
    my_ledger = ProgressLedger(path=tmp_path / "progress", dry_run=False)

    assert my_ledger.load() == set()


def test_load_ignores_blank_lines_and_whitespace(tmp_path: Path):
    path = tmp_path / "progress"
    path.write_text("es-master-01\n\n  es-data-01  \n")
    my_ledger = ProgressLedger(path=path, dry_run=False)

    assert my_ledger.load() == {"es-master-01", "es-data-01"}


def test_append_adds_one_line_per_host(tmp_path: Path):
    path = tmp_path / "progress"
    my_ledger = ProgressLedger(path=path, dry_run=False)

    my_ledger.append("es-master-01")
    my_ledger.append("es-data-01")

    assert path.read_text() == "es-master-01\nes-data-01\n"
    assert my_ledger.load() == {"es-master-01", "es-data-01"}


def test_clear_removes_the_file(tmp_path: Path):
    path = tmp_path / "progress"
    path.write_text("es-master-01\n")
    my_ledger = ProgressLedger(path=path, dry_run=False)

    my_ledger.clear()

    assert not path.exists()
    # Clearing twice is fine
    my_ledger.clear()


def test_dry_run_does_not_write(tmp_path: Path):
    path = tmp_path / "progress"
    path.write_text("es-master-01\n")
    my_ledger = ProgressLedger(path=path, dry_run=True)

    my_ledger.append("es-data-01")
    my_ledger.clear()

    assert path.read_text() == "es-master-01\n"


def test_check_writable_creates_the_file(tmp_path: Path):
    path = tmp_path / "progress"
    my_ledger = ProgressLedger(path=path, dry_run=False)

    my_ledger.check_writable()

    assert path.exists()
    assert my_ledger.load() == set()


def test_check_writable_raises_when_the_directory_is_missing(tmp_path: Path):
    my_ledger = ProgressLedger(path=tmp_path / "missing-dir" / "progress", dry_run=False)

    with pytest.raises(ProgressLedgerError):
        my_ledger.check_writable()


def test_check_writable_dry_run_does_not_write(tmp_path: Path):
    path = tmp_path / "missing-dir" / "progress"
    my_ledger = ProgressLedger(path=path, dry_run=True)

    my_ledger.check_writable()

    assert not path.parent.exists()


def test_append_raises_when_the_directory_is_missing(tmp_path: Path):
    my_ledger = ProgressLedger(path=tmp_path / "missing-dir" / "progress", dry_run=False)

    with pytest.raises(ProgressLedgerError):
        my_ledger.append("es-data-01")


def test_clear_raises_when_the_file_cant_be_removed(tmp_path: Path):
    path = tmp_path / "progress"
    path.mkdir()
    my_ledger = ProgressLedger(path=path, dry_run=False)

    with pytest.raises(ProgressLedgerError):
        my_ledger.clear()
