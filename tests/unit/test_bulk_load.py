"""Unit tests for the psql bulk loader."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from archival.bulk_load import PsqlBulkLoader, parse_copy_output
from archival.config import DatabaseConfig, FileBulkLoadConfig
from archival.exceptions import BulkLoadError


@pytest.fixture
def database() -> DatabaseConfig:
    return DatabaseConfig(name="events_db", host="localhost", user="archiver", password_env="TEST_ARCHIVE_PW")


def _loader(tmp_path: Path, **options: object) -> PsqlBulkLoader:
    return PsqlBulkLoader(FileBulkLoadConfig(temp_directory=str(tmp_path), **options))


def _process(stdout: bytes, stderr: bytes = b"", returncode: int = 0) -> MagicMock:
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.returncode = returncode
    process.wait = AsyncMock()
    return process


def test_parse_copy_output_uses_last_count() -> None:
    """Test the final COPY line wins and skipped notices are summed."""
    stderr = (
        "NOTICE:  2 rows were skipped due to data type incompatibility\n"
        "NOTICE:  1 row was skipped due to data type incompatibility\n"
    )
    assert parse_copy_output("SET\nCOPY 10\nCOPY 250\n", stderr) == (250, 3)


def test_parse_copy_output_without_count() -> None:
    with pytest.raises(BulkLoadError, match="no COPY row count"):
        parse_copy_output("SET\n", "")


@pytest.mark.parametrize(
    "native, max_errors, tolerate, expected",
    [
        (True, 10, True, "(FORMAT binary)"),
        (False, 10, False, "(FORMAT text)"),
        (False, 10, True, "(FORMAT text, ON_ERROR ignore)"),
        (False, 0, True, "(FORMAT text)"),
    ],
)
def test_copy_options(tmp_path: Path, native: bool, max_errors: int, tolerate: bool, expected: str) -> None:
    """Test the COPY option clause."""
    loader = _loader(tmp_path, native_format=native, max_errors=max_errors)
    assert loader.copy_options(tolerate_errors=tolerate) == expected


def test_new_data_file(tmp_path: Path) -> None:
    """Test data files are unique and named by format."""
    binary = _loader(tmp_path).new_data_file("events")
    text = _loader(tmp_path, native_format=False).new_data_file("events")

    assert binary.parent == tmp_path
    assert binary.name.startswith("events_archive_")
    assert binary.suffix == ".bin"
    assert text.suffix == ".txt"
    assert _loader(tmp_path).new_data_file("events") != binary


def test_cleanup(tmp_path: Path) -> None:
    """Test intermediate files are removed unless kept."""
    kept = tmp_path / "kept.bin"
    kept.write_bytes(b"data")
    _loader(tmp_path, keep_temp_files=True).cleanup(kept)
    assert kept.exists()

    _loader(tmp_path).cleanup(kept, tmp_path / "never_created.bin")
    assert not kept.exists()


@pytest.mark.asyncio
async def test_run_script_success(
    tmp_path: Path, database: DatabaseConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test a successful psql run passes the password by environment."""
    monkeypatch.setenv("TEST_ARCHIVE_PW", "s3cret")
    process = _process(b"COPY 42\n")

    with patch("archival.bulk_load.asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
        result = await _loader(tmp_path).run_script(database, "\\copy events TO 'x.bin'", "export")

    assert result.rows == 42
    assert result.skipped_rows == 0
    args = spawn.call_args.args
    assert args[0] == "psql"
    assert "s3cret" not in args
    assert "ON_ERROR_STOP=1" in args
    assert spawn.call_args.kwargs["env"]["PGPASSWORD"] == "s3cret"
    # script file is removed after the run
    assert list(tmp_path.glob("export_*.sql")) == []


@pytest.mark.asyncio
async def test_run_script_non_zero_exit(
    tmp_path: Path, database: DatabaseConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test psql failures surface the error text."""
    monkeypatch.setenv("TEST_ARCHIVE_PW", "s3cret")
    process = _process(b"", b'ERROR:  relation "events" does not exist\n', returncode=3)

    with patch("archival.bulk_load.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
        with pytest.raises(BulkLoadError, match="exited with code 3") as exc_info:
            await _loader(tmp_path).run_script(database, "select 1", "load")

    assert "does not exist" in exc_info.value.message
    assert exc_info.value.context["exit_code"] == 3


@pytest.mark.asyncio
async def test_run_script_missing_password(
    tmp_path: Path, database: DatabaseConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test a missing password fails before psql starts."""
    monkeypatch.delenv("TEST_ARCHIVE_PW", raising=False)

    with patch("archival.bulk_load.asyncio.create_subprocess_exec", AsyncMock()) as spawn:
        with pytest.raises(BulkLoadError, match="TEST_ARCHIVE_PW"):
            await _loader(tmp_path).run_script(database, "select 1", "export")

    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_run_script_psql_not_found(
    tmp_path: Path, database: DatabaseConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TEST_ARCHIVE_PW", "s3cret")
    spawn = AsyncMock(side_effect=FileNotFoundError("psql"))

    with patch("archival.bulk_load.asyncio.create_subprocess_exec", spawn):
        with pytest.raises(BulkLoadError, match="Failed to start psql"):
            await _loader(tmp_path, psql_path="/missing/psql").run_script(database, "select 1", "export")
