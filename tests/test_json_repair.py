"""
Tests for the structured-output repair parser.
"""

import json

import pytest

from ugcflow.pipeline.json_repair import (
    FAILED,
    OK,
    REPAIRED,
    parse_structured,
    repair_json,
    strip_fences,
)

VALID_DOCUMENTS = [
    '[{"a": 1}, {"b": [1, 2, 3]}]',
    '{"segments": [{"script_text": "Hi, it\'s me \\"quoted\\""}]}',
    '[]',
    '{"nested": {"deep": {"list": [true, false, null]}}}',
    '["a,]", {"b": "x, }"}]',
    '{"url": "https://cdn.test/a.png",\n  "note":\n  "// not a comment"}',
]


class TestFences:
    def test_strips_json_fence(self):
        assert strip_fences('```json\n[1]\n```') == "[1]"

    def test_strips_bare_fence(self):
        assert strip_fences('```\n{"a": 1}\n```  ') == '{"a": 1}'


class TestDirectPath:
    @pytest.mark.parametrize("doc", VALID_DOCUMENTS)
    def test_valid_json_parses_identically(self, doc):
        expect = dict if doc.startswith("{") else list
        outcome = parse_structured(f"```json\n{doc}\n```", expect=expect, wrapper_keys=())
        assert outcome.kind == OK
        assert outcome.value == json.loads(doc)

    @pytest.mark.parametrize("doc", VALID_DOCUMENTS)
    def test_repair_leaves_valid_json_untouched(self, doc):
        assert repair_json(doc) == doc

    def test_wrapper_key_is_unwrapped_for_lists(self):
        outcome = parse_structured('{"shots": [{"prompt": "x"}]}', expect=list)
        assert outcome.kind == OK
        assert outcome.value == [{"prompt": "x"}]

    def test_wrong_shape_is_a_failure(self):
        outcome = parse_structured('{"unexpected": 1}', expect=list)
        assert outcome.kind == FAILED
        assert "Expected a JSON array" in outcome.error


class TestRepair:
    def test_scenario_trailing_comma_in_fence(self):
        raw = '```json\n[{"a":1},]\n```'
        outcome = parse_structured(raw, expect=list)
        assert outcome.kind == REPAIRED
        assert outcome.value == [{"a": 1}]
        assert outcome.raw == raw

    def test_closes_object_then_array(self):
        assert repair_json('[{"a":1') == '[{"a":1}]'

    def test_closes_open_string(self):
        repaired = repair_json('{"text": "cut off mid')
        assert json.loads(repaired) == {"text": "cut off mid"}

    def test_drops_dangling_escape(self):
        repaired = repair_json('{"text": "ends with \\')
        assert json.loads(repaired) == {"text": "ends with "}

    def test_drops_comment_lines(self):
        repaired = repair_json('[\n  // first\n  1,\n  2\n]')
        assert json.loads(repaired) == [1, 2]

    def test_brackets_inside_strings_are_ignored(self):
        repaired = repair_json('[{"text": "a ] and } inside"')
        assert json.loads(repaired) == [{"text": "a ] and } inside"}]

    def test_commas_inside_strings_survive_trailing_comma_removal(self):
        repaired = repair_json('[{"text": "wait,]", "tag": "a, }"},]')
        assert json.loads(repaired) == [{"text": "wait,]", "tag": "a, }"}]

    def test_comment_markers_inside_strings_are_kept(self):
        repaired = repair_json('["// spoken aside",\n  // dropped\n"end"')
        assert json.loads(repaired) == ["// spoken aside", "end"]

    @pytest.mark.parametrize("broken", [
        '[{"a":1',
        '{"a": [1, 2,',
        '```json\n{"x": "y",}\n```',
        '{"text": "open',
        '[1, 2, 3,]',
    ])
    def test_idempotent(self, broken):
        once = repair_json(broken)
        assert repair_json(once) == once

    def test_unrepairable_keeps_first_error_and_raw(self):
        raw = "Sorry, I can't produce that."
        outcome = parse_structured(raw, expect=dict)
        assert outcome.kind == FAILED
        assert not outcome.ok
        assert outcome.error
        assert outcome.raw == raw
