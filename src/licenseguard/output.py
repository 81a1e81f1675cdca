"""Output formatting for the licenseguard CLI.

Every formatter takes a ``json_mode`` flag:
    - ``True``  → JSON ``{status, data, error}`` envelope for scripts
    - ``False`` → Rich panels rendered to a string for humans
"""

from __future__ import annotations

import json
from io import StringIO
from typing import Any, Dict, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def format_duration(seconds: Optional[Union[int, float]]) -> str:
    """Convert seconds to ``Xd Yh Zm``."""
    if seconds is None or seconds < 0:
        return "N/A"
    total = int(seconds)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: Dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, sort_keys=False)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(str(error.get("message", "An unknown error occurred.")))
        if error.get("retryable"):
            t.append("\nTemporary failure, safe to retry.", style="yellow")
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        # Text, not markup: values may contain square brackets.
        t = Text()
        for i, (key, value) in enumerate(data.items()):
            if i:
                t.append("\n")
            t.append(f"{key}: ", style="bold")
            t.append(str(value))
        return _render(Panel(t, border_style="green"))

    return f"Status: {status}"


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    retryable: bool = False,
    json_mode: bool = False,
) -> str:
    """Shortcut for a standard error response."""
    return format_response(
        "error",
        error={"code": code, "message": message, "retryable": retryable},
        json_mode=json_mode,
    )


def format_entitlement(summary: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format an entitlement summary as produced by ``Entitlement.to_dict()``."""
    if json_mode:
        return format_response("success", data=summary, json_mode=True)

    expired = bool(summary.get("is_expired"))
    features = summary.get("features") or []

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Licensed to", Text(str(summary.get("subject_id"))))
    table.add_row("Cluster", Text(str(summary.get("cluster_uuid"))))
    table.add_row("Key", Text(f"...{summary.get('key_hint')}"))
    table.add_row("Features", Text(", ".join(features) if features else "(none)"))
    table.add_row("Expires at", Text(str(summary.get("expires_at"))))
    if expired:
        table.add_row("Status", Text("EXPIRED", style="bold red"))
    else:
        remaining = format_duration(summary.get("remaining_seconds"))
        table.add_row("Status", Text(f"valid ({remaining} left)", style="green"))

    return _render(Panel(table, title="License", border_style="red" if expired else "green"))
