"""Console output for the CLI.

Provides a Console class that wraps rich for consistent output. Source output
framed as `[SRC] <time> <message>` goes to stdout; status lines go to stderr
so stdout stays machine-readable.
"""

from typing import Any

from rich.console import Console as RichConsole
from rich.table import Table
from rich.text import Text


class Console:
    """CLI output manager wrapping rich.

    Implements `tagged_line`, so it can be handed to the orchestrator as the
    terminal writer for source-only runs.
    """

    def __init__(self, *, force_terminal: bool | None = None) -> None:
        """Initialize the console.

        Args:
            force_terminal: Force terminal mode (True/False) or auto-detect (None).
        """
        self._console = RichConsole(
            force_terminal=force_terminal,
            stderr=False,
            soft_wrap=True,
        )
        self._err_console = RichConsole(
            force_terminal=force_terminal,
            stderr=True,
        )

    # -------------------------------------------------------------------------
    # Status messages
    # -------------------------------------------------------------------------

    def success(self, message: str) -> None:
        """Print a success message."""
        self._err_console.print(f"[green]✓[/green] {message}")

    def error(self, message: str) -> None:
        """Print an error message to stderr."""
        # Connector messages may contain brackets; keep them out of markup parsing
        self._err_console.print(Text.assemble(("✗", "red"), " ", message), highlight=False)

    # -------------------------------------------------------------------------
    # Source output
    # -------------------------------------------------------------------------

    def tagged_line(self, tag: str, timestamp: str, text: str) -> None:
        """Print one forwarded message with its tag and arrival time.

        The message itself is printed verbatim (no markup or highlighting).
        """
        line = Text()
        line.append(f"[{tag}]", style="bold cyan")
        line.append(f" {timestamp} ", style="dim")
        line.append(text)
        self._console.print(line, highlight=False)

    # -------------------------------------------------------------------------
    # Structured output
    # -------------------------------------------------------------------------

    def table(
        self,
        rows: list[dict[str, Any]],
        columns: list[tuple[str, str]],  # (key, header)
        *,
        title: str | None = None,
    ) -> None:
        """Print a table to stderr."""
        table = Table(title=title, show_header=True, header_style="bold")
        for _, header in columns:
            table.add_column(header)
        for row in rows:
            table.add_row(*(str(row.get(key, "")) for key, _ in columns))
        self._err_console.print(table)


# Module-level default instance for convenience
_default: Console | None = None


def get_console() -> Console:
    """Get the default console instance."""
    global _default
    if _default is None:
        _default = Console()
    return _default
