import json

import pytest

from homework_api.services.output_repair import (
    fix_latex_escapes,
    isolate_json_value,
    remove_trailing_commas,
    repair_model_output,
    strip_code_fences,
)


def test_repair_makes_latex_voltage_output_parseable():
    raw = '{"content": "Voltage \\(2.0 ||text V\\)"}'

    repaired = repair_model_output(raw)

    assert json.loads(repaired) == {"content": "Voltage \\(2.0 ||text V\\)"}


def test_repair_doubles_latex_commands_that_look_like_json_escapes():
    raw = '{"q": "$\\frac{1}{2} \\times \\theta + \\beta \\nabla \\rho \\text{m}$"}'

    parsed = json.loads(repair_model_output(raw))

    assert parsed["q"] == "$\\frac{1}{2} \\times \\theta + \\beta \\nabla \\rho \\text{m}$"


def test_repair_keeps_valid_json_escapes():
    raw = '{"q": "line one\\nline two \\"quoted\\" \\u00e9 tab\\tend"}'

    parsed = json.loads(repair_model_output(raw))

    assert parsed["q"] == 'line one\nline two "quoted" é tab\tend'


def test_repair_leaves_already_escaped_backslashes_alone():
    raw = '{"q": "$\\\\sqrt{16}$ and $\\\\frac{1}{2}$"}'

    assert repair_model_output(raw) == raw
    assert json.loads(repair_model_output(raw))["q"] == "$\\sqrt{16}$ and $\\frac{1}{2}$"


def test_repair_doubles_backslash_u_without_hex_digits():
    raw = '{"q": "$\\underline{x}$"}'

    assert json.loads(repair_model_output(raw))["q"] == "$\\underline{x}$"


@pytest.mark.parametrize(
    "latex",
    [
        "\\boxed{4}",
        "\\bigl( x \\bigr)",
        "\\rightleftharpoons",
        "\\textcolor{red}{x}",
        "\\texttt{code}",
        "A \\nsubseteq B",
        "\\frac{1}{3} \\fbox{y}",
    ],
)
def test_repair_keeps_latex_commands_starting_with_escape_letters(latex):
    raw = json.dumps({"q": latex}).replace("\\\\", "\\")

    repaired = repair_model_output(raw)

    assert json.loads(repaired)["q"] == latex
    assert repair_model_output(repaired) == repaired


def test_repair_still_decodes_newline_and_tab_before_words():
    raw = '{"q": "first\\nline then\\ttab"}'

    assert json.loads(repair_model_output(raw))["q"] == "first\nline then\ttab"


@pytest.mark.parametrize(
    "raw",
    [
        '```json\n{"exercises": [{"number": "1",},],}\n```',
        'Here is the result: {"a": "\\(x\\)", "b": [1, 2,,]} Hope this helps!',
        '{"summary": "cut off mid-str',
        '{"a": {"b": [1, 2',
        '{"q": "$\\\\frac{1}{2}$ \\times"}',
        "no json at all",
        "",
    ],
)
def test_repair_is_idempotent(raw):
    once = repair_model_output(raw)

    assert repair_model_output(once) == once


def test_repair_returns_empty_string_for_non_text():
    assert repair_model_output(None) == ""


def test_strip_code_fences_removes_markdown_wrapper():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'


def test_remove_trailing_commas_handles_runs():
    assert remove_trailing_commas('{"a": [1, 2,,], "b": 3,}') == '{"a": [1, 2], "b": 3}'


def test_isolate_json_value_drops_surrounding_prose():
    text = 'Sure! {"a": {"b": "}"}} trailing words'

    assert isolate_json_value(text) == '{"a": {"b": "}"}}'


def test_isolate_json_value_closes_truncated_output():
    closed = isolate_json_value('{"exercises": [{"questionText": "Solve for x')

    assert json.loads(closed) == {"exercises": [{"questionText": "Solve for x"}]}


def test_isolate_json_value_fills_dangling_key():
    closed = isolate_json_value('{"exercises": [], "summary":')

    assert json.loads(closed) == {"exercises": [], "summary": None}


def test_truncated_fenced_output_becomes_parseable():
    raw = '```json\n{"exercises": [{"exerciseNumber": "1", "questionText": "$\\frac{a}{b}$", "inputType": "math_'

    parsed = json.loads(repair_model_output(raw))

    assert parsed["exercises"][0]["questionText"] == "$\\frac{a}{b}$"
    assert parsed["exercises"][0]["inputType"] == "math_"


def test_fix_latex_escapes_restores_protected_pairs():
    assert fix_latex_escapes("a \\\\ b \\( c") == "a \\\\ b \\\\( c"
