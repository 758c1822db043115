"""Runs psql as the external bulk-copy tool for file-based loads."""

import asyncio
import os
import re
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from archival.config import DatabaseConfig, FileBulkLoadConfig
from archival.exceptions import BulkLoadError
from utils.logging import get_logger

_COPY_STATUS = re.compile(r"^COPY (\d+)$", re.MULTILINE)
_SKIPPED_ROWS = re.compile(r"(\d+) rows? (?:was|were) skipped due to data type incompatibility")


@dataclass
class PsqlResult:
    """Parsed outcome of one psql invocation."""

    rows: int
    skipped_rows: int
    duration_seconds: float
    output: str


def parse_copy_output(stdout: str, stderr: str) -> tuple[int, int]:
    """Extract the row count of the last ``COPY n`` line and skipped-row notices.

    Raises:
        BulkLoadError: If psql printed no COPY status
    """
    counts = _COPY_STATUS.findall(stdout)
    if not counts:
        raise BulkLoadError(
            "psql output contains no COPY row count",
            context={"stdout": stdout[-500:], "stderr": stderr[-500:]},
        )
    skipped = sum(int(n) for n in _SKIPPED_ROWS.findall(stderr))
    return int(counts[-1]), skipped


class PsqlBulkLoader:
    """Exports and loads data files through ``psql`` ``\\copy`` commands.

    Passwords travel in ``PGPASSWORD`` so they never appear on the command line.
    """

    def __init__(
        self,
        config: Optional[FileBulkLoadConfig] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.config = config or FileBulkLoadConfig()
        self.logger = logger or get_logger("bulk_load")

    def work_directory(self) -> Path:
        return Path(self.config.temp_directory or tempfile.gettempdir())

    def new_data_file(self, table_name: str) -> Path:
        """Unique path for an intermediate data file."""
        suffix = "bin" if self.config.native_format else "txt"
        return self.work_directory() / f"{table_name}_archive_{uuid.uuid4().hex}.{suffix}"

    def copy_options(self, tolerate_errors: bool = False) -> str:
        """``WITH (...)`` clause for both export and load."""
        if self.config.native_format:
            return "(FORMAT binary)"
        if tolerate_errors and self.config.max_errors > 0:
            return "(FORMAT text, ON_ERROR ignore)"
        return "(FORMAT text)"

    def cleanup(self, *paths: Path) -> None:
        """Remove intermediate files unless they are kept for debugging."""
        if self.config.keep_temp_files:
            self.logger.info("Keeping intermediate files", files=[str(p) for p in paths])
            return
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                self.logger.warning("Failed to remove intermediate file", file=str(path), error=str(e))

    async def run_script(self, database: DatabaseConfig, script: str, label: str) -> PsqlResult:
        """Run a psql script against a database and parse its COPY output.

        Args:
            database: Connection settings (password read from its configured source)
            script: psql script; ``\\copy`` meta-commands must each fit on one line
            label: Short name used in logs and file names (``export``/``load``)

        Returns:
            PsqlResult with the copied and skipped row counts

        Raises:
            BulkLoadError: On non-zero exit, timeout, or unparseable output
        """
        script_path = self.work_directory() / f"{label}_{uuid.uuid4().hex}.sql"
        script_path.write_text(script + "\n", encoding="utf-8")

        env = dict(os.environ)
        try:
            env["PGPASSWORD"] = database.get_password()
        except ValueError as e:
            raise BulkLoadError(str(e), context={"database": database.name}) from e
        env["PGAPPNAME"] = "table_archival"

        args = [
            self.config.psql_path,
            "--no-psqlrc",
            "--set",
            "ON_ERROR_STOP=1",
            "--host",
            database.host,
            "--port",
            str(database.port),
            "--username",
            database.user,
            "--dbname",
            database.name,
            "--file",
            str(script_path),
        ]

        started = time.monotonic()
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except OSError as e:
                raise BulkLoadError(
                    f"Failed to start psql: {e}",
                    context={"psql_path": self.config.psql_path},
                ) from e

            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(), timeout=self.config.timeout_seconds
                )
            except (asyncio.TimeoutError, asyncio.CancelledError) as e:
                process.kill()
                await process.wait()
                if isinstance(e, asyncio.CancelledError):
                    raise
                raise BulkLoadError(
                    f"psql {label} timed out after {self.config.timeout_seconds}s",
                    context={"database": database.name},
                ) from e
        finally:
            self.cleanup(script_path)

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        duration = time.monotonic() - started

        if process.returncode != 0:
            raise BulkLoadError(
                f"psql {label} exited with code {process.returncode}: {stderr.strip()[-1000:]}",
                context={"database": database.name, "exit_code": process.returncode},
            )

        rows, skipped = parse_copy_output(stdout, stderr)
        self.logger.debug(
            "psql finished",
            step=label,
            database=database.name,
            rows=rows,
            skipped=skipped,
            duration_seconds=round(duration, 3),
        )
        return PsqlResult(rows=rows, skipped_rows=skipped, duration_seconds=duration, output=stdout)
