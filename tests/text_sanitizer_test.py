from repair_engine import sanitize_raw_email


def test_entities_are_decoded_and_carriage_returns_removed():
    raw = "From: Jane &lt;jane@...&gt;\r\nSubject: Tea &amp; cake\r\n\r\nHello\r\n"

    assert sanitize_raw_email(raw) == "From: Jane <jane@...>\nSubject: Tea & cake\n\nHello\n"


def test_non_ascii_characters_are_dropped():
    assert sanitize_raw_email("café � ok") == "caf  ok"


def test_bytes_input_with_invalid_utf8_is_accepted():
    assert sanitize_raw_email(b"abc\xff\xfedef") == "abcdef"


def test_unicode_spaces_become_ascii_spaces():
    assert sanitize_raw_email("a&nbsp;b c") == "a b c"


def test_control_characters_are_removed_but_tabs_and_newlines_kept():
    assert sanitize_raw_email("a\x00b\x07c\td\x0be\x1bf\n") == "abc\tdef\n"


def test_missing_input_yields_empty_string():
    assert sanitize_raw_email(None) == ""
    assert sanitize_raw_email("") == ""


def test_entities_are_decoded_only_once():
    assert sanitize_raw_email("&amp;lt;") == "&lt;"
