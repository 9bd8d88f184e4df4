"""
Unit tests for wrapper generation
"""

import ast

import pytest

from evaluator.wrapper import DEFAULT_MAX_ENTRIES, generate_script


def embedded(script: str, name: str):
    """Return the literal assigned to a module-level name in the wrapper."""
    tree = ast.parse(script)
    for node in tree.body:
        if isinstance(node, ast.Assign) and getattr(node.targets[0], "id", None) == name:
            return ast.literal_eval(node.value)
    raise AssertionError(f"{name} not found in wrapper")


class TestGenerateScript:
    """Test suite for generate_script."""

    @pytest.mark.parametrize("code", [
        "print('hello')",
        'print("""triple""")\nprint(\'\'\'other\'\'\')',
        "s = '\\n' + \"\\\\\"\nprint(s)",
        "# __MAX_ENTRIES__ and __SOURCE__ are just text here",
        "print('ünïcødé ✓')",
        "raise SystemExit(1)",
    ])
    def test_source_embedded_verbatim(self, code):
        """Test the submission survives embedding byte for byte."""
        script = generate_script(code)

        assert embedded(script, "SOURCE") == code

    def test_submission_is_not_parsed(self):
        """Test invalid submissions still produce a valid wrapper."""
        script = generate_script("def (:\n  ")

        compile(script, "<wrapper>", "exec")
        assert embedded(script, "SOURCE") == "def (:\n  "

    def test_max_entries(self):
        """Test the log cap is written into the wrapper."""
        assert embedded(generate_script("pass"), "MAX_ENTRIES") == DEFAULT_MAX_ENTRIES
        assert embedded(generate_script("pass", max_entries=5), "MAX_ENTRIES") == 5

    def test_wrapper_posts_and_closes(self):
        """Test the wrapper relies on the injected channel callables."""
        script = generate_script("pass")

        assert "post_message(" in script
        assert "finally:\n    close()" in script
