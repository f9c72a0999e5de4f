import json

import pytest

from knowledge_companion.llm import ToolCall
from knowledge_companion.tool_parsing import (
    extract_bare_json,
    extract_tool_calls,
    normalize_structured_calls,
    split_thinking,
)


def _args(call: ToolCall) -> dict:
    return json.loads(call.arguments)


def test_single_bracketed_block_yields_one_call():
    text = '[TOOL]{"tool":"calculate","args":{"expression":"1+1"}}[/TOOL]'

    calls = extract_tool_calls(text)

    assert len(calls) == 1
    assert calls[0].name == "calculate"
    assert _args(calls[0]) == {"expression": "1+1"}
    assert calls[0].id == "call_0"


def test_bracketed_array_yields_calls_in_order():
    text = '[TOOL][{"tool":"a","args":{}},{"tool":"b","args":{}}][/TOOL]'

    calls = extract_tool_calls(text)

    assert [call.name for call in calls] == ["a", "b"]
    assert [call.id for call in calls] == ["call_0", "call_1"]


def test_concatenated_objects_in_one_block_yield_one_call_each():
    text = (
        'Let me check. [TOOL]{"tool":"web_search","args":{"query":"x"}} '
        '{"tool":"calculate","args":{"expression":"2*3"}}[/TOOL]'
    )

    calls = extract_tool_calls(text)

    assert [call.name for call in calls] == ["web_search", "calculate"]
    assert _args(calls[1]) == {"expression": "2*3"}


def test_tool_call_marker_is_case_insensitive_and_multiline():
    text = '[tool_call]\n{\n  "name": "read_file",\n  "arguments": {"path": "docs/a.md"}\n}\n[/TOOL_CALL]'

    calls = extract_tool_calls(text)

    assert len(calls) == 1
    assert calls[0].name == "read_file"
    assert _args(calls[0]) == {"path": "docs/a.md"}


def test_string_arguments_are_kept_verbatim():
    text = '[TOOL]{"tool":"calculate","arguments":"{\\"expression\\": \\"3+4\\"}"}[/TOOL]'

    calls = extract_tool_calls(text)

    assert calls[0].arguments == '{"expression": "3+4"}'


def test_legacy_grammar_matches_json_equivalent():
    legacy = '[TOOL]tool => "calculate"\nargs => {"expression": "1+1"}[/TOOL]'
    modern = '[TOOL]{"tool":"calculate","args":{"expression":"1+1"}}[/TOOL]'

    legacy_calls = extract_tool_calls(legacy)
    modern_calls = extract_tool_calls(modern)

    assert len(legacy_calls) == 1
    assert legacy_calls[0].name == modern_calls[0].name
    assert _args(legacy_calls[0]) == _args(modern_calls[0])


def test_legacy_grammar_falls_back_to_key_value_pairs():
    text = '[TOOL]tool => "web_search"\nargs => { query => "rust async", max_results => "3" }[/TOOL]'

    calls = extract_tool_calls(text)

    assert calls[0].name == "web_search"
    assert _args(calls[0]) == {"query": "rust async", "max_results": "3"}


def test_xml_tool_code_block_is_used_when_no_brackets():
    text = 'Sure.\n<tool_code>{"name": "web_search", "arguments": {"query": "grok"}}</tool_code>'

    calls = extract_tool_calls(text)

    assert len(calls) == 1
    assert calls[0].name == "web_search"
    assert _args(calls[0]) == {"query": "grok"}


def test_bare_json_last_resort_fires_for_unbracketed_text():
    text = 'I will compute it: {"tool": "calculate", "arguments": {"expression": "25 * 4"}} now.'

    calls = extract_tool_calls(text)

    assert len(calls) == 1
    assert calls[0].name == "calculate"
    assert _args(calls[0]) == {"expression": "25 * 4"}


def test_bare_json_handles_braces_inside_strings():
    text = '{"tool": "write_file", "args": {"path": "docs/x.md", "content": "a } b { c"}}'

    calls = extract_bare_json(text)

    assert len(calls) == 1
    assert json.loads(calls[0][1])["content"] == "a } b { c"


@pytest.mark.parametrize(
    "text",
    [
        'Sure. {"tool": "invoke_agent", "arguments": {"payload": {"tool": "web_search", "query": "x"}}}',
        'Sure. {"arguments": {"payload": {"tool": "web_search", "query": "x"}}, "tool": "invoke_agent"}',
    ],
)
def test_bare_json_ignores_tool_keys_nested_in_arguments(text):
    calls = extract_tool_calls(text)

    assert [call.name for call in calls] == ["invoke_agent"]
    assert _args(calls[0]) == {"payload": {"tool": "web_search", "query": "x"}}


def test_bare_json_keeps_sibling_calls_after_nested_keys():
    text = (
        '{"tool": "invoke_agent", "args": {"inner": {"tool": "nope"}}} then '
        '{"tool": "calculate", "args": {"expression": "1+1"}}'
    )

    assert [name for name, _ in extract_bare_json(text)] == ["invoke_agent", "calculate"]


def test_bracketed_strategy_wins_over_bare_json():
    text = (
        '[TOOL]{"tool":"a","args":{}}[/TOOL] and elsewhere {"tool": "b", "args": {}}'
    )

    calls = extract_tool_calls(text)

    assert [call.name for call in calls] == ["a"]


def test_structured_calls_take_precedence_and_skip_text():
    structured = [ToolCall(id="abc", name="calculate", arguments={"expression": "1"})]  # type: ignore[arg-type]
    text = '[TOOL]{"tool":"web_search","args":{}}[/TOOL]'

    calls = extract_tool_calls(text, structured_calls=structured)

    assert len(calls) == 1
    assert calls[0].id == "abc"
    assert calls[0].name == "calculate"
    assert _args(calls[0]) == {"expression": "1"}


def test_structured_dicts_without_ids_get_synthetic_ids():
    calls = normalize_structured_calls(
        [{"function": {"name": "calculate", "arguments": '{"expression": "2"}'}}],
        base_index=4,
    )

    assert calls[0].id == "call_4"
    assert calls[0].arguments == '{"expression": "2"}'


def test_base_index_offsets_synthetic_ids():
    text = '[TOOL][{"tool":"a","args":{}},{"tool":"b","args":{}}][/TOOL]'

    calls = extract_tool_calls(text, base_index=3)

    assert [call.id for call in calls] == ["call_3", "call_4"]


def test_malformed_input_never_raises():
    for text in ["", "[TOOL]{not json[/TOOL]", "<tool_code>nope</tool_code>", '{"tool": ', None]:
        assert extract_tool_calls(text) == []  # type: ignore[arg-type]


def test_split_thinking_separates_reasoning():
    clean, thoughts = split_thinking("<think>plan it</think>\nThe answer is 4.")

    assert clean == "The answer is 4."
    assert thoughts == ["plan it"]
