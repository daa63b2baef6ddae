"""Utility functions for formatted CLI output."""

from typing import Any

import click


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
    click.echo()


def print_section(title: str, color: str = "yellow") -> None:
    click.echo(click.style(f"\n{title}:", fg=color, bold=True))


def print_key_value(
    key: str, value: Any, key_color: str = "white", value_color: str = "cyan"
) -> None:
    """Print a key-value pair.

    Args:
        key: Key name
        value: Value
        key_color: Key color
        value_color: Value color
    """
    click.echo(
        click.style(f"  {key}: ", fg=key_color) + click.style(str(value), fg=value_color, bold=True)
    )


def print_success(message: str) -> None:
    click.echo(click.style(f"✓ {message}", fg="green", bold=True))


def print_error(message: str) -> None:
    click.echo(click.style(f"✗ {message}", fg="red", bold=True), err=True)


def print_warning(message: str) -> None:
    click.echo(click.style(f"⚠ {message}", fg="yellow", bold=True))


def print_table(headers: list[str], rows: list[list[Any]], header_color: str = "cyan") -> None:
    """Print a formatted table.

    Args:
        headers: Table headers
        rows: Table rows
        header_color: Header color
    """
    if not rows:
        return

    col_widths = [len(str(h)) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(cell)))

    header_row = " | ".join(str(h).ljust(col_widths[i]) for i, h in enumerate(headers))
    click.echo(click.style(header_row, fg=header_color, bold=True))
    click.echo(click.style("-" * len(header_row), dim=True))

    for row in rows:
        row_str = " | ".join(str(cell).ljust(col_widths[i]) for i, cell in enumerate(row))
        click.echo(row_str)


def print_summary(stats: dict[str, Any], title: str = "Summary") -> None:
    """Print a formatted summary from run statistics.

    Args:
        stats: Statistics dictionary (export, import or replication)
        title: Summary title
    """
    print_header(title)

    if "tables" in stats:
        # Export summary
        print_section("Tables")
        print_key_value("Exported", stats.get("tables", 0))
        print_key_value("Data skipped", stats.get("tables_ignored", 0))

        print_section("Output")
        print_key_value("Rows", f"{stats.get('rows', 0):,}")
        print_key_value("Bytes", f"{stats.get('bytes_written', 0):,}")
        print_key_value("Parts", stats.get("parts", 0))
        print_key_value("SHA-256", stats.get("sha256", ""))

    elif "statements" in stats:
        # Import summary
        print_section("Import")
        print_key_value("Statements", f"{stats.get('statements', 0):,}")
        print_key_value("Bytes read", f"{stats.get('bytes', 0):,}")

    elif "listed" in stats:
        # Replication summary
        print_section("Objects")
        print_key_value("Listed", f"{stats.get('listed', 0):,}")
        print_key_value("Skipped (present)", f"{stats.get('skipped', 0):,}")
        print_key_value("Copied", f"{stats.get('copied', 0):,}")
        print_key_value("Failed", stats.get("failed", 0))
        print_key_value("Copy attempts", f"{stats.get('copy_attempts', 0):,}")

    click.echo()
