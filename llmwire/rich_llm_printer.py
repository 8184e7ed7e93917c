"""
Rich printers for displaying canonical replies and stream events.
"""
import json
from typing import Any, AsyncIterator, Dict, List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text

from .types import Reply, StreamEvent

console = Console()


def _metadata(reply: Reply) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    for key in ("model", "finish_reason"):
        if reply.get(key):
            meta[key] = reply[key]
    usage = reply.get("usage")
    if usage:
        meta["usage"] = {k: v for k, v in usage.items() if k != "raw" and v is not None}
    if reply.get("tool_calls"):
        meta["tool_calls"] = [
            {"name": c.get("name"), "arguments": c.get("arguments")} for c in reply["tool_calls"]
        ]
    return meta


def _metadata_panel(meta: Dict[str, Any]) -> Panel:
    return Panel(
        Syntax(json.dumps(meta, indent=2, default=str), "json", theme="lightbulb", background_color="default"),
        title="[bold]Metadata[/bold]",
        border_style="dim",
    )


class RichStreamPrinter:
    """
    Displays a stream of canonical events live with rich.

    Attributes:
        title: Title for the display panel
        show_thinking: Whether to render reasoning text above the answer
        show_metadata: Whether to show usage and tool calls at the end
        code_theme: Theme for code blocks
        refresh_rate: Refresh rate for Live display
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_thinking: bool = True,
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_thinking = show_thinking
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.border_style = border_style
        self.console = console or globals()["console"]
        self._text = ""
        self._thinking = ""
        self._errors: List[str] = []
        self._reply: Optional[Reply] = None

    async def print_stream(self, events: AsyncIterator[StreamEvent]) -> Reply:
        """
        Render ``events`` until the stream ends.

        Returns:
            Reply: The reply carried by the ``done`` event (empty if none came).
        """
        self._text = ""
        self._thinking = ""
        self._errors = []
        self._reply = None

        with Live(Panel(""), refresh_per_second=self.refresh_rate, console=self.console) as live:
            async for event in events:
                self.handle(event)
                live.update(self.render())
        return self._reply or {}

    def handle(self, event: StreamEvent) -> None:
        kind = event["type"]
        if kind == "text_delta":
            self._text += event["text"]
        elif kind == "thinking_delta":
            self._thinking += event["text"]
        elif kind == "error":
            self._errors.append(event.get("message", ""))
        elif kind == "done":
            self._reply = event["reply"]

    def render(self) -> Panel:
        final = self._reply is not None
        title = "[bold]Final Response[/bold]" if final else f"[bold]{self.title}[/bold]"
        if final and self._reply.get("provider"):
            title += f" [dim]({self._reply['provider']})[/dim]"

        items: List[Any] = []
        if self.show_thinking and self._thinking.strip():
            items.append(Text(self._thinking, style="dim italic"))
        if self._text.strip():
            items.append(Markdown(self._text, code_theme=self.code_theme, inline_code_theme=self.inline_code_theme))
        for message in self._errors:
            items.append(Text(message, style="bold red"))
        if not items:
            items.append(Text("(waiting for response...)", style="dim italic"))
        if final and self.show_metadata:
            meta = _metadata(self._reply)
            if meta:
                items.append(_metadata_panel(meta))

        if final:
            border = "red" if self._reply.get("is_error") else "green"
        else:
            border = self.border_style
        return Panel(Group(*items), title=title, border_style=border, padding=(1, 2))

    def get_full_text(self) -> str:
        return self._text

    def get_reply(self) -> Optional[Reply]:
        return self._reply


class RichPrinter:
    """
    Displays a non-streaming Reply with rich.

    Error replies are shown with their humanized message in a red panel.
    """

    def __init__(
        self,
        title: str = "Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        border_style: str = "green",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.border_style = border_style
        self.console = console or globals()["console"]
        self._reply: Optional[Reply] = None

    def print_reply(self, reply: Reply) -> Reply:
        """Print ``reply`` in a panel and return it for chaining."""
        self._reply = reply
        title = f"[bold]{self.title}[/bold]"
        if reply.get("provider"):
            title += f" [dim]({reply['provider']})[/dim]"

        if reply.get("is_error"):
            self.console.print(
                Panel(Text(reply.get("error_message", "Unknown error"), style="bold red"),
                      title=title, border_style="red", padding=(1, 2))
            )
            return reply

        items: List[Any] = []
        if reply.get("thinking_content"):
            items.append(Text(reply["thinking_content"], style="dim italic"))
        text = reply.get("content", "")
        if text.strip():
            items.append(Markdown(text, code_theme=self.code_theme, inline_code_theme=self.inline_code_theme))
        elif not reply.get("tool_calls"):
            items.append(Text("(empty response)", style="dim italic"))
        if self.show_metadata:
            meta = _metadata(reply)
            if meta:
                items.append(_metadata_panel(meta))

        self.console.print(Panel(Group(*items), title=title, border_style=self.border_style, padding=(1, 2)))
        return reply

    def get_reply(self) -> Optional[Reply]:
        return self._reply
