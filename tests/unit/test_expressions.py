"""Tests for condition expression evaluation."""

import pytest

from conductor.orchestration.workflow_engine.expressions import (
    create_condition,
    evaluate_expression,
    lookup,
    validate_expression,
)


class TestEvaluateExpression:
    """Tests for evaluate_expression()."""

    @pytest.mark.parametrize("expression", [None, "", "   "])
    def test_empty_condition_is_true(self, expression):
        assert evaluate_expression(expression, {}) is True

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("quality === 'high'", True),
            ("quality === 'low'", False),
            ('quality !== "low"', True),
            ("count > 3", True),
            ("count >= 5", True),
            ("count < 5", False),
            ("count <= 5", True),
            ("count == '5'", True),
            ("count === '5'", False),
            ("flag && count > 1", True),
            ("!flag || count > 10", False),
            ("(count > 10 || flag) && quality === 'high'", True),
            ("missing === null", True),
            ("missing", False),
            ("flag", True),
        ],
    )
    def test_comparisons_and_logic(self, expression, expected):
        scope = {"quality": "high", "count": 5, "flag": True}
        assert evaluate_expression(expression, scope) is expected

    def test_dotted_paths(self):
        scope = {"analyze": {"score": 0.9, "labels": {"main": "cats"}}}
        assert evaluate_expression("analyze.score > 0.5", scope) is True
        assert evaluate_expression("analyze.labels.main === 'cats'", scope) is True

    def test_flat_dotted_key_wins(self):
        scope = {"analyze.score": 1, "analyze": {"score": 0}}
        assert evaluate_expression("analyze.score === 1", scope) is True

    def test_strict_equality_distinguishes_bool_and_number(self):
        assert evaluate_expression("flag === 1", {"flag": True}) is False

    def test_unparseable_falls_back_to_variable(self):
        scope = {"weird key?": True}
        assert evaluate_expression("weird key?", scope) is True
        assert evaluate_expression("not a valid ) expression", {}) is False

    def test_string_escapes_match_for_both_quote_styles(self):
        scope = {"word": "it's", "path": "a\tb"}
        assert evaluate_expression(r"word === 'it\'s'", scope) is True
        assert evaluate_expression(r'word === "it\'s"', scope) is True
        assert evaluate_expression(r"path === 'a\tb'", scope) is True
        assert evaluate_expression(r'path === "a\tb"', scope) is True
        assert evaluate_expression(r"word === 'it\u0027s'", scope) is True

    def test_never_raises(self):
        assert evaluate_expression("count > ", {"count": 1}) is False
        assert evaluate_expression("((", {}) is False


class TestValidateExpression:
    """Tests for validate_expression()."""

    @pytest.mark.parametrize("expression", ["a === 1", "x > 2 && (y || z)", "!done"])
    def test_valid(self, expression):
        assert validate_expression(expression) is True

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "(a === 1",
            "a === 1)",
            "eval('1')",
            "__import__('os')",
            "require('fs')",
            "process.exit",
            "obj.__class__",
        ],
    )
    def test_invalid_or_unsafe(self, expression):
        assert validate_expression(expression) is False

    @pytest.mark.parametrize(
        "expression",
        [
            'ticket.state == "open"',
            'stage === "compile"',
            "mode === 'import'",
            'label === "(draft"',
            "kind === 'eval' && ready",
        ],
    )
    def test_words_inside_string_literals_are_allowed(self, expression):
        assert validate_expression(expression) is True

    @pytest.mark.parametrize("expression", ["open(path)", "compile === 1", "lambda_step.ok"])
    def test_python_names_are_ordinary_variables(self, expression):
        assert validate_expression(expression) is True


class TestCreateCondition:
    """Tests for create_condition() helper patterns."""

    def test_patterns_round_trip_through_evaluation(self):
        scope = {"status": "ready", "count": 3}
        assert evaluate_expression(create_condition("equals", "status", "ready"), scope)
        assert evaluate_expression(create_condition("not_equals", "status", "busy"), scope)
        assert evaluate_expression(create_condition("greater_than", "count", 2), scope)
        assert evaluate_expression(create_condition("less_than", "count", 4), scope)
        assert evaluate_expression(create_condition("exists", "status"), scope)
        assert evaluate_expression(create_condition("not_exists", "other"), scope)

    def test_unknown_pattern(self):
        with pytest.raises(ValueError, match="Unknown condition pattern"):
            create_condition("matches", "x", "y")


def test_lookup_missing_segment_returns_none():
    assert lookup("a.b.c", {"a": {"b": {}}}) is None
    assert lookup("a.b", {"a": {"b": 2}}) == 2
