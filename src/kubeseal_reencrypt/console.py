"""Terminal output for kubeseal-reencrypt.

Setup messages, per-item reporter lines, progress bars and the final
summary all print through the one themed rich console defined here.
"""

from collections.abc import Generator, Mapping
from contextlib import contextmanager

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table
from rich.theme import Theme

console = Console(
    theme=Theme(
        {
            "info": "cyan",
            "success": "green",
            "verified": "bold green",
            "warning": "yellow",
            "error": "bold red",
            "highlight": "bold cyan",
            "muted": "dim",
        }
    )
)

# (style, marker) printed in front of one-line status messages
_MARKERS: dict[str, tuple[str, str]] = {
    "info": ("info", "ℹ"),
    "success": ("success", "✓"),
    "warning": ("warning", "⚠"),
    "error": ("error", "✗"),
    "action": ("info", "→"),
    "step": ("muted", "•"),
}

# Style of each prefix the reporter emits
TAXONOMY_STYLES: dict[str, str] = {
    "START": "info",
    "Processing": "muted",
    "ERROR": "error",
    "WARNING": "warning",
    "SUCCESS": "success",
    "VERIFIED": "verified",
    "END": "info",
}


def _emit(kind: str, message: str) -> None:
    style, marker = _MARKERS[kind]
    console.print(f"[{style}]{marker}[/{style}] {message}")


def info(message: str) -> None:
    _emit("info", message)


def success(message: str) -> None:
    _emit("success", message)


def warning(message: str) -> None:
    _emit("warning", message)


def error(message: str) -> None:
    _emit("error", message)


def action(message: str) -> None:
    """Announce something the tool is about to do."""
    _emit("action", message)


def step(message: str) -> None:
    """Detail line printed under an action."""
    _emit("step", message)


def taxonomy(prefix: str, message: str, separator: str = ": ") -> None:
    """Print one reporter line with a colored prefix.

    Args:
        prefix: Line keyword such as ``SUCCESS`` or ``Processing``.
        message: Rest of the line. Square brackets are escaped, not parsed.
        separator: Placed between the prefix and the message.

    """
    style = TAXONOMY_STYLES.get(prefix, "info")
    console.print(f"[{style}]{prefix}[/{style}]{separator}{escape(message)}")


def highlight(text: str) -> str:
    return f"[highlight]{text}[/highlight]"


@contextmanager
def spinner(message: str) -> Generator[None, None, None]:
    """Show a spinning status line for the duration of the block."""
    with console.status(f"[info]{message}[/info]", spinner="dots"):
        yield


def _progress(*extra: ProgressColumn, transient: bool = False) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        *extra,
        console=console,
        transient=transient,
    )


def create_download_progress() -> Progress:
    """Progress bar for fetching the kubeseal release archive."""
    return _progress(DownloadColumn(), TransferSpeedColumn(), TimeRemainingColumn())


def create_task_progress() -> Progress:
    """Progress bar counting items that reached a terminal state.

    It is transient, so the summary replaces it once the run is over.
    """
    return _progress(TextColumn("[muted]{task.completed}/{task.total}[/muted]"), transient=True)


def summary_panel(title: str, items: Mapping[str, str], *, ok: bool = True) -> None:
    """Print ``items`` as an aligned label/value grid inside a panel.

    Args:
        title: Panel title.
        items: Labels and their values, in display order.
        ok: Selects a green border, or red when False.

    """
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column(style="cyan")
    for label, value in items.items():
        grid.add_row(f"{label}:", value)
    console.print(Panel(grid, title=f"[bold]{title}[/bold]", border_style="green" if ok else "red"))


def failures_table(rows: list[tuple[str, str, str]]) -> None:
    """Print one row per failed item: object, error kind and detail."""
    table = Table(show_header=True, header_style="bold", border_style="red")
    table.add_column("SealedSecret")
    table.add_column("Error", style="error")
    table.add_column("Detail", overflow="fold")
    for ref, kind, detail in rows:
        table.add_row(ref, kind, escape(detail))
    console.print(table)


def newline() -> None:
    console.print()
