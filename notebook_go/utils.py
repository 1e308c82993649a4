"""
Utility functions for notebook-go.
"""

import json
from typing import Any

from rich.markdown import Markdown
from rich.syntax import Syntax
from rich.text import Text


_PREFERRED_MIME = ["text/html", "text/markdown", "application/json", "image/svg+xml"]


def _pick(data: dict[str, Any]) -> tuple[str, Any]:
    for mime_type in _PREFERRED_MIME:
        if mime_type in data:
            return mime_type, data[mime_type]
    if "text/plain" in data:
        return "text/plain", data["text/plain"]
    if data:
        mime_type = next(iter(data))
        return mime_type, f"<{mime_type} data>"
    return "text/plain", ""


def format_output(output: dict[str, Any]) -> str:
    """
    Format an output dictionary for display (plain text).

    Args:
        output: Output dictionary from ExecutionResult

    Returns:
        Formatted string for display
    """
    output_type = output.get("type", "")

    if output_type == "stream":
        return output.get("text", "")

    elif output_type == "error":
        ename = output.get("ename", "Error")
        evalue = output.get("evalue", "")
        return f"{ename}: {evalue}"

    elif output_type == "display_data":
        mime_type, value = _pick(output.get("data", {}))
        if mime_type == "application/json" and not isinstance(value, str):
            return json.dumps(value, indent=2)
        return str(value)

    return str(output)


def format_rich_output(output: dict[str, Any]):
    """
    Format an output dictionary as a Rich renderable.

    Args:
        output: Output dictionary from ExecutionResult

    Returns:
        Rich renderable object for console display
    """
    output_type = output.get("type", "")

    if output_type == "stream":
        text = output.get("text", "")
        if output.get("name") == "stderr":
            return Text(text.rstrip("\n"), style="yellow")
        return Text(text.rstrip("\n"))

    elif output_type == "error":
        ename = output.get("ename", "Error")
        evalue = output.get("evalue", "")

        error_text = Text()
        error_text.append(f"{ename}", style="bold red")
        error_text.append(f": {evalue}", style="red")
        return error_text

    elif output_type == "display_data":
        mime_type, value = _pick(output.get("data", {}))
        if mime_type == "text/markdown":
            return Markdown(str(value))
        if mime_type == "application/json":
            text = json.dumps(value, indent=2) if not isinstance(value, str) else value
            return Syntax(text, "json", theme="monokai", line_numbers=False)
        return Text(str(value), style="cyan")

    return Text(str(output), style="dim")

