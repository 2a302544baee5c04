"""Tests for the frontmatter codec."""
import pytest

from docspace.storage.frontmatter_codec import decode, encode, parse_value, strip


class TestDecode:
    """Tests for decoding document text."""

    def test_well_formed_header(self):
        raw = '---\ntitle: "My Doc"\nmode: "markdown"\ncount: 3\n---\n\nBody text\n'
        fields, body = decode(raw)
        assert fields == {"title": "My Doc", "mode": "markdown", "count": 3}
        assert body == "\nBody text\n"

    def test_malformed_close_keeps_text_on_closing_line(self):
        """Body text glued to the closing delimiter must not be dropped."""
        raw = "---\ntitle: X\n---content on this line\nmore content"
        fields, body = decode(raw)
        assert fields == {"title": "X"}
        assert body == "content on this line\nmore content"

    def test_malformed_close_at_end_of_file(self):
        fields, body = decode("---\na: 1\n---tail")
        assert fields == {"a": 1}
        assert body == "tail"

    def test_no_header_returns_original_text(self):
        raw = "  hello\nworld\n\n"
        result = decode(raw)
        assert result.fields == {}
        assert result.body == raw
        assert result.has_header is False

    def test_unclosed_header_is_plain_text(self):
        raw = "---\ntitle: Never closed\nbody"
        fields, body = decode(raw)
        assert fields == {}
        assert body == raw

    def test_leading_whitespace_before_header(self):
        fields, body = decode("\n\n  ---\ntitle: T\n---\nbody")
        assert fields == {"title": "T"}
        assert body == "body"

    def test_byte_order_mark_is_ignored(self):
        fields, body = decode("\ufeff---\ntitle: T\n---\nbody")
        assert fields == {"title": "T"}
        assert body == "body"

    def test_crlf_line_endings(self):
        fields, body = decode("---\r\ntitle: X\r\n---\r\nbody\r\n")
        assert fields == {"title": "X"}
        assert body == "body\r\n"

    def test_lines_without_colon_are_ignored(self):
        fields, _ = decode("---\ntitle: T\njust some words\n---\nbody")
        assert fields == {"title": "T"}

    def test_value_split_on_first_colon(self):
        fields, _ = decode("---\nurl: https://example.com/a\n---\n")
        assert fields == {"url": "https://example.com/a"}

    def test_yaml_block_list(self):
        raw = "---\ntitle: T\ntags:\n  - alpha\n  - beta\n---\nbody"
        fields, body = decode(raw)
        assert fields == {"title": "T", "tags": ["alpha", "beta"]}
        assert body == "body"

    def test_unindented_block_list_with_yaml_types(self):
        raw = "---\ntags:\n- 2024\n- 2024-01-01\n- plain\n- {nested: map}\n---\nbody"
        fields, _ = decode(raw)
        assert fields == {"tags": [2024, "2024-01-01", "plain"]}

    def test_unparseable_block_list_keeps_empty_value(self):
        fields, _ = decode("---\ntags:\n- [unclosed\ntitle: T\n---\nbody")
        assert fields == {"tags": "", "title": "T"}

    def test_empty_header(self):
        fields, body = decode("---\n---\nbody")
        assert fields == {}
        assert body == "body"


class TestParseValue:
    """Tests for header value parsing."""

    @pytest.mark.parametrize("raw,expected", [
        ("42", 42),
        ("1.5", 1.5),
        ("true", True),
        ("false", False),
        ("null", None),
        ('"quoted"', "quoted"),
        ('["a", 1, true]', ["a", 1, True]),
        ("plain words", "plain words"),
        ("[unclosed", "[unclosed"),
        ("", ""),
    ])
    def test_parse_value(self, raw, expected):
        assert parse_value(raw) == expected

    def test_mapping_kept_as_raw_string(self):
        assert parse_value('{"a": 1}') == '{"a": 1}'


class TestEncode:
    """Tests for encoding and round trips."""

    def test_encode_writes_json_values(self):
        text = encode({"title": "T", "tags": ["a", "b"]}, "body")
        assert text == '---\ntitle: "T"\ntags: ["a", "b"]\n---\nbody'

    def test_empty_fields_return_body(self):
        assert encode({}, "just body") == "just body"

    def test_round_trip(self):
        fields = {
            "title": "Hello: world",
            "count": 3,
            "ratio": 1.5,
            "draft": True,
            "tags": ["a", "b"],
            "number_like": "123",
            "nothing": None,
        }
        body = "Body with --- inside\nsecond line"
        decoded = decode(encode(fields, body))
        assert decoded.fields == fields
        assert decoded.body == body

    @pytest.mark.parametrize("body", [
        "line one\n",
        "\n\nx",
        "  x  ",
        "",
        "\n",
    ])
    def test_round_trip_keeps_surrounding_whitespace(self, body):
        fields = {"title": "T"}
        assert tuple(decode(encode(fields, body))) == (fields, body)

    def test_round_trip_preserves_key_order(self):
        fields = {"z": 1, "a": 2, "m": 3}
        decoded_fields, _ = decode(encode(fields, "x"))
        assert list(decoded_fields) == ["z", "a", "m"]

    def test_round_trip_body_starting_with_delimiter_line(self):
        fields = {"title": "T"}
        body = "---\nnot a header"
        assert tuple(decode(encode(fields, body))) == (fields, body)

    def test_unicode_values(self):
        fields = {"title": "Café ☕", "tags": ["日本"]}
        assert decode(encode(fields, "ü")).fields == fields

    def test_strip(self):
        assert strip('---\ntitle: "T"\n---\nbody') == "body"
        assert strip("no header") == "no header"
