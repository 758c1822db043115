"""Formatted console output for the archival CLI."""

from typing import Any

import click

_STATUS_COLORS = {
    "Success": "green",
    "Skipped": "yellow",
    "Failed": "red",
    "Running": "blue",
    "NotStarted": "white",
}


def print_header(title: str, width: int = 70, color: str = "cyan") -> None:
    """Print a formatted header.

    Args:
        title: Header title
        width: Header width
        color: Header color
    """
    click.echo()
    click.echo(click.style("=" * width, fg=color))
    click.echo(click.style(title, fg=color, bold=True))
    click.echo(click.style("=" * width, fg=color))


def print_section(title: str, color: str = "yellow") -> None:
    click.echo(click.style(f"\n{title}:", fg=color, bold=True))


def print_key_value(key: str, value: Any, value_color: str = "cyan") -> None:
    """Print an indented ``key: value`` pair; None renders as a dash."""
    shown = "-" if value is None else value
    click.echo(f"  {key}: " + click.style(str(shown), fg=value_color, bold=True))


def print_success(message: str) -> None:
    click.echo(click.style(f"✓ {message}", fg="green", bold=True))


def print_error(message: str) -> None:
    click.echo(click.style(f"✗ {message}", fg="red", bold=True), err=True)


def print_warning(message: str) -> None:
    click.echo(click.style(f"⚠ {message}", fg="yellow", bold=True))


def status_style(status: str) -> str:
    """Color a job status name."""
    return click.style(status, fg=_STATUS_COLORS.get(status, "white"), bold=True)


def print_table(headers: list[str], rows: list[list[Any]], header_color: str = "cyan") -> None:
    """Print a left-aligned table with one header row.

    Args:
        headers: Table headers
        rows: Table rows (cells are rendered with ``str``)
        header_color: Header color
    """
    if not rows:
        click.echo("  (none)")
        return

    cells = [["-" if cell is None else str(cell) for cell in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    header_row = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    click.echo(click.style(header_row, fg=header_color, bold=True))
    click.echo(click.style("-" * len(header_row), dim=True))
    for row in cells:
        click.echo(" | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)))


def print_execution_summary(summary: dict[str, Any]) -> None:
    """Print the outcome of one job invocation.

    Args:
        summary: ``ExecutionSummary.to_dict()`` output
    """
    print_header(f"Job {summary['job_id']}")
    click.echo(f"  Status: {status_style(str(summary['status']))}")
    print_key_value("Rows moved", f"{summary['rows_moved']:,}")
    print_key_value("Batches", summary["batches"])
    print_key_value("Duration", f"{summary['duration_seconds']:.2f}s")
    if summary.get("auto_disabled"):
        print_warning("Job was disabled after too many consecutive failures")
    if summary.get("error"):
        print_key_value("Error", summary["error"], value_color="red")
    click.echo()


def print_verdict(blocking: list[tuple[str, str]], warnings: list[tuple[str, str]]) -> None:
    """Print blocking issues and warnings of a safety check.

    Args:
        blocking: ``(code, message)`` pairs that forbid the move
        warnings: ``(code, message)`` pairs that are reported only
    """
    if not blocking and not warnings:
        print_success("No issues found")
        return
    for code, message in blocking:
        click.echo(click.style(f"  ✗ {code}: ", fg="red", bold=True) + message)
    for code, message in warnings:
        click.echo(click.style(f"  ⚠ {code}: ", fg="yellow", bold=True) + message)
