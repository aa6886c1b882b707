"""Tests for specstar.lib.envparse module."""

import pytest

from specstar.lib.envparse import load_env, parse_env


class TestParseEnv:
    """Tests for parse_env()."""

    def test_basic_pairs(self):
        text = "# comment\n\nSPECSTAR_MODEL=claude-opus\nexport SPECSTAR_MAX_SESSIONS=4\n"
        assert parse_env(text) == {"SPECSTAR_MODEL": "claude-opus", "SPECSTAR_MAX_SESSIONS": "4"}

    def test_strips_matching_quotes(self):
        assert parse_env('A="hello world"\nB=\'x\'') == {"A": "hello world", "B": "x"}

    def test_later_assignment_wins(self):
        assert parse_env("A=1\nA=2") == {"A": "2"}

    def test_missing_equals(self):
        with pytest.raises(ValueError, match="test.env:2: invalid syntax"):
            parse_env("A=1\nBROKEN", "test.env")

    def test_invalid_key(self):
        with pytest.raises(ValueError, match="invalid key 'lower'"):
            parse_env("lower=1")

    @pytest.mark.parametrize("value", ["$(whoami)", "`id`", "${HOME}", "a;b", "a && b", "a | b"])
    def test_forbidden_patterns(self, value):
        with pytest.raises(ValueError, match="forbidden pattern"):
            parse_env(f"A={value}")


class TestLoadEnv:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_env(tmp_path / "nope.env")

    def test_reads_file(self, tmp_path):
        path = tmp_path / "specstar.env"
        path.write_text("A=1\n")
        assert load_env(path) == {"A": "1"}
