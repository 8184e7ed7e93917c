from llmwire.think_tags import ThinkTagParser, parse_think_tags, partial_suffix_len


class TestParseThinkTags:
    def test_no_tags(self):
        assert parse_think_tags("plain answer") == ("plain answer", "")

    def test_leading_block(self):
        display, thinking = parse_think_tags("<think>reasoning here</think>The answer is 4.")
        assert display == "The answer is 4."
        assert thinking == "reasoning here"

    def test_multiple_blocks_are_joined(self):
        display, thinking = parse_think_tags("<think>a</think>x<think>b</think>y")
        assert display == "xy"
        assert thinking == "a\n\nb"

    def test_unclosed_block_counts_as_thinking(self):
        display, thinking = parse_think_tags("Hello <think>still going")
        assert display == "Hello"
        assert thinking == "still going"

    def test_empty(self):
        assert parse_think_tags("") == ("", "")


class TestThinkTagParser:
    def test_partial_suffix_len(self):
        assert partial_suffix_len("abc<th", "<think>") == 3
        assert partial_suffix_len("abc", "<think>") == 0
        # A complete tag is not a proper prefix
        assert partial_suffix_len("<think>", "<think>") == 0

    def test_split_tags_across_deltas(self):
        parser = ThinkTagParser()
        chunks = ["Hi <th", "ink>deep ", "thought</thi", "nk> done"]
        display, thinking = [], []
        for chunk in chunks:
            delta = parser.process(chunk)
            display.append(delta.display_text)
            thinking.append(delta.thinking)
        rest = parser.flush()
        display.append(rest.display_text)

        assert "".join(display) == "Hi  done"
        assert "".join(thinking) == "deep thought"
        assert parser.thinking_content == "deep thought"

    def test_held_back_text_is_flushed(self):
        parser = ThinkTagParser()
        delta = parser.process("value <")
        assert delta.display_text == "value "
        assert parser.flush().display_text == "<"

    def test_unclosed_tag_flushes_as_thinking(self):
        parser = ThinkTagParser()
        parser.process("<think>partial")
        rest = parser.flush()
        assert rest.display_text == ""
        assert parser.thinking_content.endswith("partial")
