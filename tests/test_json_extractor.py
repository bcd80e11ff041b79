import json

import pytest

from exam_relay.errors import ExtractionError, UpstreamError
from exam_relay.json_extractor import (
    escape_control_characters,
    extract_json,
    isolate_object,
    parse_strict,
    repair_quotes,
    salvage_fields,
    strip_code_fences,
)


class TestStages:

    def test_strip_fences_with_language_tag(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_strip_fences_without_tag(self):
        assert strip_code_fences('  ```\n{"a": 1}```  ') == '{"a": 1}'

    def test_strip_fences_leaves_plain_text(self):
        assert strip_code_fences('  {"a": 1}\n') == '{"a": 1}'

    def test_parse_strict_rejects_non_objects(self):
        assert parse_strict("[1, 2]") is None
        assert parse_strict('"text"') is None
        assert parse_strict("") is None
        assert parse_strict(None) is None

    def test_isolate_object_is_greedy(self):
        text = 'Here you go: {"a": {"b": 1}} hope this helps }'
        assert isolate_object(text) == '{"a": {"b": 1}} hope this helps }'

    def test_isolate_object_without_braces(self):
        assert isolate_object("no object here") is None
        assert isolate_object("} backwards {") is None

    def test_escape_control_characters_only_touches_values(self):
        repaired = escape_control_characters('{"a": "x\ny\tz",\n"b": 2}')
        assert json.loads(repaired) == {"a": "x\ny\tz", "b": 2}

    def test_repair_quotes_escapes_inner_quote(self):
        repaired = repair_quotes('{"feedback": "He wrote "hello" here", "total": 5}')
        assert json.loads(repaired) == {"feedback": 'He wrote "hello" here', "total": 5}

    def test_repair_quotes_keeps_valid_escapes(self):
        repaired = repair_quotes('{"a": "line\\nnext \\"ok\\" C:\\path", "b": "y"}')
        assert json.loads(repaired) == {"a": 'line\nnext "ok" C:\\path', "b": "y"}

    def test_repair_quotes_keeps_escaped_backslash(self):
        repaired = repair_quotes(r'{"feedback": "Pfad C:\\Users und "Zitat" hier", "corrections": "x"}')
        assert json.loads(repaired) == {"feedback": r'Pfad C:\Users und "Zitat" hier', "corrections": "x"}

    def test_repair_quotes_escapes_quote_after_escaped_backslash(self):
        repaired = repair_quotes(r'{"feedback": "Ende \\"Zitat" hier", "corrections": "x"}')
        assert json.loads(repaired) == {"feedback": r'Ende \"Zitat" hier', "corrections": "x"}

    def test_salvage_needs_two_fields(self):
        assert salvage_fields('"feedback": "only one"', ("feedback", "total")) is None

    def test_salvage_strings_and_numbers(self):
        text = '{"content_textstructure": 3, "language": 4.5, "feedback": "Gut \\"gemacht\\"\\nweiter"}'
        result = salvage_fields(text, ("content_textstructure", "language", "feedback", "corrections"))
        assert result == {"content_textstructure": 3, "language": 4.5, "feedback": 'Gut "gemacht"\nweiter'}


class TestExtractJson:

    def test_valid_json_returned_unchanged(self):
        original = {"headline": "Titel", "article_text": "Absatz\n\nZwei \"Zitat\"", "n": 3, "nested": {"x": [1, 2]}}
        assert extract_json(json.dumps(original)) == original

    def test_fenced_json(self):
        assert extract_json('```json\n{"a": "b"}\n```') == {"a": "b"}

    def test_prose_around_object(self):
        assert extract_json('Sure! Here is the JSON:\n{"a": 1, "b": "c"}\nLet me know.') == {"a": 1, "b": "c"}

    def test_literal_newline_in_value(self):
        result = extract_json('{"a": "line1\nline2", "b": 1}')
        assert result == {"a": "line1\nline2", "b": 1}

    def test_unescaped_quote_in_value(self):
        result = extract_json('{"feedback": "Der Satz "I am agree" ist falsch.", "total": 4}')
        assert result["feedback"] == 'Der Satz "I am agree" ist falsch.'
        assert result["total"] == 4

    def test_escaped_backslash_survives_quote_repair(self):
        result = extract_json(r'{"feedback": "Pfad C:\\Users und "Zitat" hier", "corrections": "x"}')
        assert result["feedback"] == r'Pfad C:\Users und "Zitat" hier'

    def test_carriage_returns_dropped_with_quote_repair(self):
        result = extract_json('{"a": "x "q"\r\ny", "b": "z"}')
        assert result == {"a": 'x "q"\ny', "b": "z"}

    def test_salvage_from_truncated_output(self):
        text = '{"content_textstructure": 3, "language": 5, "feedback": "Gut'
        result = extract_json(text, ("content_textstructure", "language", "total", "feedback"))
        assert result == {"content_textstructure": 3, "language": 5}

    def test_no_fields_means_no_salvage(self):
        with pytest.raises(ExtractionError):
            extract_json('{"content_textstructure": 3, "language": 5, "feedback": "Gut')

    def test_failure_without_object_or_fields(self):
        with pytest.raises(ExtractionError) as excinfo:
            extract_json("I'm sorry, I cannot grade this text.", ("content_textstructure", "language"))
        assert excinfo.value.message == "Model did not return valid JSON."
        assert isinstance(excinfo.value, UpstreamError)

    def test_single_salvaged_field_is_not_enough(self):
        with pytest.raises(ExtractionError):
            extract_json('"feedback": "nur das"', ("feedback", "corrections"))

    def test_empty_input(self):
        with pytest.raises(ExtractionError):
            extract_json("")
