from bizcoach.services.sanitize import MIN_SANITIZED_LENGTH, matching_brace, sanitize, strip_json_objects


def test_removes_fenced_json_and_inline_code():
    reply = (
        "Great start! Here is what I captured:\n\n"
        "```json\n{\"productDescription\": \"candles\"}\n```\n\n"
        "Try this wording: `Mission: Bring calm to every home`.\n"
        "What makes your candles different?"
    )
    out = sanitize(reply)
    assert "```" not in out
    assert "`" not in out
    assert "{" not in out
    assert "Great start!" in out
    assert "What makes your candles different?" in out


def test_strips_bare_json_object_but_keeps_prose_braces():
    reply = 'Noted. {"targetMarket": "young families", "channels": ["online"]} Shall we talk pricing? {curly aside}'
    out = sanitize(reply)
    assert "targetMarket" not in out
    assert "{curly aside}" in out
    assert out.startswith("Noted.")


def test_drops_key_value_and_bracket_lines():
    reply = 'Here is the summary of our chat so far:\n[\n  "mission": "grow",\n]\nLet me know what to change.'
    out = sanitize(reply)
    assert '"mission"' not in out
    assert "[" not in out
    assert "Let me know what to change." in out


def test_idempotent():
    samples = [
        "Plain prose with nothing to remove, just advice about marketing.",
        "Mixed ```python\nprint(1)\n``` content with `code` and {\"a\": 1} bits, plus more prose here.",
        "Nested {\"a\": {\"b\": \"}\"}} then text that should stay in the reply.",
        "Unbalanced ``` fence and a { brace without an end but enough words.",
    ]
    for sample in samples:
        once = sanitize(sample)
        assert sanitize(once) == once


def test_guard_keeps_original_when_cleaning_would_blank_it():
    reply = '```json\n{"missionStatement": "Bring handmade comfort to every home"}\n```'
    out = sanitize(reply)
    assert len(out) >= MIN_SANITIZED_LENGTH
    assert out == reply.strip()


def test_long_prose_never_shrinks_below_ten_characters():
    reply = "Think about who buys your candles and why they choose them. {\"x\": 1}"
    assert len(sanitize(reply)) >= 10


def test_short_reply_unchanged():
    assert sanitize("Sure!") == "Sure!"
    assert sanitize("") == ""


def test_matching_brace_skips_braces_in_strings():
    text = '{"a": "}{", "b": {"c": 1}} tail'
    assert matching_brace(text, 0) == text.index(" tail") - 1
    assert matching_brace("{never closed", 0) == -1


def test_strip_json_objects_keeps_plain_brace_text():
    assert strip_json_objects("keep {this} but drop {} and {\"k\": 1}") == "keep {this} but drop  and "
