"""Tests for the threatfeed command line."""

import json

import pytest

from threatfeed.__main__ import main


def _json_blocks(text):
    """Split the CLI output into its printed JSON documents."""
    decoder = json.JSONDecoder()
    blocks, pos = [], 0
    text = text.strip()
    while pos < len(text):
        obj, end = decoder.raw_decode(text, pos)
        blocks.append(obj)
        pos = end
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return blocks


class TestCli:
    def test_stats_prints_rollup(self, capsys):
        assert main(["stats", "--period", "hourly"]) == 0
        (rollup,) = _json_blocks(capsys.readouterr().out)
        assert rollup["period"] == "hourly"
        assert rollup["metrics"]["total_threats"] == 0

    def test_stats_with_analytics(self, capsys):
        assert main(["stats", "--analytics-days", "3"]) == 0
        rollup, analytics = _json_blocks(capsys.readouterr().out)
        assert rollup["period"] == "daily"
        assert analytics["days"] == 3

    def test_run_aging(self, capsys):
        assert main(["run-aging"]) == 0
        (result,) = _json_blocks(capsys.readouterr().out)
        assert "sweep" in result

    def test_unknown_period_rejected(self):
        with pytest.raises(SystemExit):
            main(["stats", "--period", "yearly"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])
