import io

import pytest
from rich.console import Console
from rich.panel import Panel

from llmwire.rich_llm_printer import RichPrinter, RichStreamPrinter


def make_console():
    return Console(file=io.StringIO(), width=100, force_terminal=False, color_system=None)


async def events_of(*events):
    for event in events:
        yield event


class TestRichStreamPrinter:
    @pytest.mark.asyncio
    async def test_print_stream_returns_reply(self):
        console = make_console()
        reply = {"content": "Hello world", "is_error": False, "has_tool_calls": False, "provider": "openai",
                 "usage": {"input_tokens": 1, "output_tokens": 2, "total_tokens": 3, "raw": {"x": 1}}}
        printer = RichStreamPrinter(console=console)

        result = await printer.print_stream(events_of(
            {"type": "thinking_delta", "text": "pondering"},
            {"type": "text_delta", "text": "Hello "},
            {"type": "text_delta", "text": "world"},
            {"type": "done", "reply": reply},
        ))

        assert result is reply
        assert printer.get_full_text() == "Hello world"
        output = console.file.getvalue()
        assert "Hello world" in output
        assert "pondering" in output
        assert '"total_tokens": 3' in output
        assert '"raw"' not in output

    def test_render_states(self):
        printer = RichStreamPrinter(console=make_console(), show_thinking=False)
        waiting = printer.render()
        assert isinstance(waiting, Panel)
        assert waiting.border_style == "blue"

        printer.handle({"type": "error", "message": "Rate limited"})
        printer.handle({"type": "done", "reply": {"content": "", "is_error": True}})
        final = printer.render()
        assert final.border_style == "red"
        assert "Final Response" in final.title

    @pytest.mark.asyncio
    async def test_stream_without_done(self):
        printer = RichStreamPrinter(console=make_console())
        result = await printer.print_stream(events_of({"type": "text_delta", "text": "cut"}))
        assert result == {}
        assert printer.get_reply() is None


class TestRichPrinter:
    def test_print_reply(self):
        console = make_console()
        reply = {"content": "**Bold** answer", "is_error": False, "has_tool_calls": True, "model": "gpt-4o",
                 "tool_calls": [{"id": "call_1", "name": "f", "arguments": {"a": 1}}]}

        assert RichPrinter(console=console).print_reply(reply) is reply

        output = console.file.getvalue()
        assert "Bold answer" in output
        assert '"name": "f"' in output
        assert "gpt-4o" in output

    def test_print_error_reply(self):
        console = make_console()
        printer = RichPrinter(console=console)
        printer.print_reply({"content": "", "is_error": True, "error_message": "Authentication failed: Check the key."})
        assert "Authentication failed" in console.file.getvalue()
        assert printer.get_reply()["is_error"] is True

    def test_empty_reply(self):
        console = make_console()
        RichPrinter(console=console, show_metadata=False).print_reply({"content": "", "is_error": False})
        assert "(empty response)" in console.file.getvalue()
