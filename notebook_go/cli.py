"""
CLI interface for notebook-go with Rich output.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from notebook_go import CellType, MessageBus, Notebook, NotebookKernel, SessionManager
from notebook_go.errors import FatalError, InputNotAllowedError
from notebook_go.utils import format_output, format_rich_output


console = Console()


class ConsoleBus(MessageBus):
    """Bus that prints outputs on the console as they arrive."""

    def __init__(self, interactive: bool = False):
        self.interactive = interactive

    def publish_stream(self, name: str, text: str) -> None:
        style = "yellow" if name == "stderr" else None
        console.print(Text(text, style=style), end="")

    def publish_display(self, data: dict[str, Any], display_id: Optional[str] = None) -> None:
        console.print(format_rich_output({"type": "display_data", "data": data}))

    def request_input(self, prompt: str, password: bool = False) -> str:
        if not self.interactive:
            raise InputNotAllowedError("input is not available when running non-interactively")
        return Prompt.ask(prompt or "input", password=password, console=console)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity")
def main(verbose: bool):
    """notebook-go: incremental Go notebook engine with memorized declarations."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@main.command()
@click.argument("path", type=click.Path(), default="notebook.nbgo")
@click.option("--name", "-n", default=None, help="Notebook name")
def new(path: str, name: str):
    """Create a new notebook."""
    if name is None:
        name = Path(path).stem

    nb = Notebook(name=name)
    nb.add_cell('import "fmt"\n\n%%\nfmt.Println("Hello from notebook-go!")\n')
    nb.add_cell("## Notes\n\nAdd your notes here.", CellType.MARKDOWN)
    nb.save(Path(path))

    console.print(Panel(
        f"[green]Created:[/green] {path}\n"
        f"[dim]Name:[/dim] {name}\n"
        f"[dim]Cells:[/dim] 2 (1 code, 1 markdown)",
        title="[bold blue]notebook-go[/bold blue]",
        border_style="green",
    ))
    console.print(f"\n[dim]Run with:[/dim] notebook-go run {path}")


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--save-session", "-s", is_flag=True, help="Save session state after execution")
@click.option("--restore", "-r", is_flag=True, help="Restore the notebook's checkpoint first")
def run(path: str, save_session: bool, restore: bool):
    """Run a notebook non-interactively."""
    nb = Notebook.load(Path(path))
    kernel = NotebookKernel(bus=ConsoleBus())
    session_manager = SessionManager()

    console.print(Panel(
        f"[bold]{nb.name}[/bold]  [dim]{path}[/dim]",
        title="[bold blue]notebook-go[/bold blue]",
        border_style="blue",
    ))
    console.print()

    nb.clear_results()
    code_cells = nb.code_cells()
    if not code_cells:
        console.print("[yellow]No code cells to execute[/yellow]")
        kernel.shutdown()
        return

    if restore:
        info = session_manager.load_checkpoint(kernel, Path(path))
        if info is not None:
            console.print(f"[dim]Restored {len(info['restored_declarations'])} declarations[/dim]")

    success_count = 0
    try:
        for cell_idx, cell in code_cells:
            console.print(f"[dim]--- Cell {cell_idx} ---[/dim]")
            console.print(Syntax(cell.source, "go", theme="monokai", line_numbers=True))

            result = kernel.execute_cell(cell.source)
            cell.record(result)

            if not result.success:
                break
            success_count += 1
            console.print()

        if save_session:
            session_manager.save_checkpoint(kernel, Path(path))
            console.print("[dim]Session saved[/dim]")
    except FatalError as e:
        console.print(f"[red]Fatal: {e}[/red]")
        sys.exit(1)
    finally:
        kernel.shutdown()

    nb.save(Path(path))

    total = len(code_cells)
    if success_count == total:
        console.print(f"[green]All {total} cells executed successfully[/green]")
    else:
        console.print(f"[yellow]Executed {success_count}/{total} cells[/yellow]")
        sys.exit(1)


def _read_cell(count: int) -> Optional[str]:
    """Read lines until an empty line; None on end of input."""
    lines = []
    while True:
        prompt = f"[bold green]In \\[{count}][/bold green]" if not lines else "[dim]...[/dim]"
        try:
            line = Prompt.ask(prompt, default="", show_default=False, console=console)
        except (EOFError, KeyboardInterrupt):
            return None
        if not line.strip():
            return "\n".join(lines)
        lines.append(line)


@main.command()
@click.option("--session", "session_path", type=click.Path(exists=True), default=None,
              help="Session file to restore before starting")
def repl(session_path: Optional[str]):
    """Submit cells typed at the console. An empty line runs the cell."""
    kernel = NotebookKernel(bus=ConsoleBus(interactive=True))
    session_manager = SessionManager()
    if session_path:
        info = session_manager.load_session(kernel, Path(session_path))
        console.print(f"[dim]Restored {len(info['restored_declarations'])} declarations[/dim]")

    console.print(Panel(
        "Type Go code; an empty line runs the cell.\n"
        "[dim]%help lists special commands, %save NAME saves the session, Ctrl-D quits.[/dim]",
        title="[bold blue]notebook-go[/bold blue]",
        border_style="blue",
    ))

    try:
        while True:
            code = _read_cell(kernel.execution_count + 1)
            if code is None:
                break
            if not code.strip():
                continue
            if code.strip().startswith("%save"):
                parts = code.split()
                name = parts[1] if len(parts) > 1 else None
                saved = session_manager.save_session(kernel, name=name)
                console.print(f"[dim]Session saved to {saved}[/dim]")
                continue

            kernel.execute_cell(code, allow_stdin=True)
    except FatalError as e:
        console.print(f"[red]Fatal: {e}[/red]")
        sys.exit(1)
    finally:
        kernel.shutdown()


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--plain", is_flag=True, help="Print outputs as plain text")
def show(path: str, plain: bool):
    """Show a notebook's cells and how their last run ended."""
    nb = Notebook.load(Path(path))
    for cell in nb.cells:
        if cell.type == CellType.MARKDOWN:
            console.print(Markdown(cell.source))
            continue
        label = f"In [{cell.execution_count or ' '}]"
        # Lines the compiler rejected are highlighted.
        console.print(Panel(Syntax(cell.source, "go", theme="monokai",
                                   highlight_lines=cell.error_lines()),
                            title=f"[dim]{label}[/dim]", title_align="left",
                            border_style="red" if cell.failed else "dim"))
        for output in cell.outputs:
            if plain:
                click.echo(format_output(output).rstrip("\n"))
            else:
                console.print(format_rich_output(output))
        if cell.failed:
            summary = cell.status.replace("_", " ")
            if cell.exit_code is not None:
                summary += f" (exit status {cell.exit_code})"
            if plain:
                click.echo(summary)
            else:
                console.print(f"[bold red]{summary}[/bold red]")


@main.command()
def sessions():
    """List saved sessions."""
    sm = SessionManager()
    sessions_list = sm.list_sessions()

    if not sessions_list:
        console.print("[yellow]No saved sessions found[/yellow]")
        console.print("[dim]Save a session with %save in the repl, or --save-session when running[/dim]")
        return

    table = Table(
        title="Saved Sessions",
        border_style="blue",
        show_lines=True,
    )
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Name", style="white")
    table.add_column("Saved At", style="dim")
    table.add_column("Declarations", justify="right", style="green")

    for i, session in enumerate(sessions_list):
        table.add_row(
            str(i),
            session.get("name", ""),
            session.get("saved_at", "") or "",
            str(session.get("decl_count", 0)),
        )

    console.print(table)


@main.command(name="help")
def show_help():
    """Show the special commands understood in cells."""
    from notebook_go.specialcmd import HELP_MESSAGE
    console.print(Markdown(HELP_MESSAGE))


if __name__ == "__main__":
    main()
