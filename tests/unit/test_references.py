"""Tests for ${...} reference parsing and resolution."""

import pytest

from conductor.exceptions import ReferenceResolutionError
from conductor.orchestration.workflow_engine.references import (
    Literal,
    StepOutputRef,
    Template,
    VariableRef,
    iter_references,
    parse_value,
    referenced_steps,
    resolve,
    resolve_variables,
)


class TestParseValue:
    """Tests for parse_value()."""

    def test_plain_values_are_literals(self):
        assert parse_value(42) == Literal(42)
        assert parse_value("no refs here") == Literal("no refs here")

    def test_lone_variable_reference(self):
        assert parse_value("${topic}") == VariableRef("topic")

    def test_step_reference_requires_known_step(self):
        assert parse_value("${script.text}", ["script"]) == StepOutputRef("script", "text")
        assert parse_value("${config.text}", ["script"]) == VariableRef("config.text")

    def test_template_keeps_literal_parts(self):
        parsed = parse_value("Title: ${script.title}!", ["script"])
        assert isinstance(parsed, Template)
        assert parsed.parts == ("Title: ", StepOutputRef("script", "title"), "!")

    def test_nested_structures(self):
        parsed = parse_value({"a": ["${x}", {"b": "${s.k}"}]}, ["s"])
        refs = list(iter_references(parsed))
        assert VariableRef("x") in refs
        assert StepOutputRef("s", "k") in refs
        assert referenced_steps(parsed) == {"s": {"k"}}


class TestResolve:
    """Tests for resolve() and resolve_variables()."""

    def test_lone_reference_keeps_type(self):
        assert resolve(parse_value("${count}"), {"count": 3}) == 3
        assert resolve(parse_value("${items}"), {"items": [1, 2]}) == [1, 2]

    def test_template_renders_strings(self):
        parsed = parse_value("${name} has ${count} items", [])
        assert resolve(parsed, {"name": "cart", "count": 2}) == "cart has 2 items"

    def test_template_renders_none_as_empty(self):
        assert resolve(parse_value("[${value}]"), {"value": None}) == "[]"

    def test_step_outputs(self):
        parsed = parse_value({"text": "${script.text}", "n": "${script.meta.words}"}, ["script"])
        outputs = {"script": {"text": "hello", "meta": {"words": 1}}}
        assert resolve(parsed, {}, outputs) == {"text": "hello", "n": 1}

    def test_dotted_variable_path(self):
        assert resolve(parse_value("${user.name}"), {"user": {"name": "ada"}}) == "ada"

    def test_unknown_variable_raises(self):
        with pytest.raises(ReferenceResolutionError, match=r"Unknown variable: \$\{missing\}"):
            resolve(parse_value("${missing}"), {}, step_id="a")

    def test_incomplete_step_raises(self):
        parsed = parse_value("${script.text}", ["script"])
        with pytest.raises(ReferenceResolutionError, match="has not completed"):
            resolve(parsed, {}, {})

    def test_missing_output_key_raises(self):
        parsed = parse_value("${script.text}", ["script"])
        with pytest.raises(ReferenceResolutionError, match="produced no output 'text'"):
            resolve(parsed, {}, {"script": {"other": 1}})

    def test_resolution_error_is_not_retryable(self):
        with pytest.raises(ReferenceResolutionError) as exc_info:
            resolve(parse_value("${missing}"), {})
        assert exc_info.value.retryable is False
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_resolve_variables_shortcut(self):
        value = {"greeting": "Hi ${name}", "prev": "${a.out}"}
        assert resolve_variables(value, {"name": "Bo"}, {"a": {"out": 7}}) == {"greeting": "Hi Bo", "prev": 7}
