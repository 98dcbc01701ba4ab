"""Tests for the api-healer command line."""

import json

import pytest

from src.api_healer.cli import main


class TestDiffCommand:

    def test_text_report_and_breaking_exit_code(self, spec_files, capsys):
        old_path, new_path = spec_files

        exit_code = main(["diff", str(old_path), str(new_path)])

        out = capsys.readouterr().out
        assert exit_code == 1
        assert out.startswith("6 change(s) detected between versions 1.0.0 and 2.0.0: 3 breaking")
        assert "Breaking changes:" in out

    def test_json_output(self, spec_files, capsys):
        old_path, new_path = spec_files

        main(["diff", str(old_path), str(new_path), "--json"])

        data = json.loads(capsys.readouterr().out)
        assert data["diff"]["summary"]["breaking_changes"] == 3
        assert len(data["report"]["minor_changes"]) == 2

    def test_identical_specs_exit_zero(self, spec_files, capsys):
        old_path, _ = spec_files

        assert main(["diff", str(old_path), str(old_path)]) == 0
        assert capsys.readouterr().out.startswith("No changes detected")

    def test_missing_file(self, tmp_path, spec_files, capsys):
        _, new_path = spec_files

        exit_code = main(["diff", str(tmp_path / "missing.json"), str(new_path)])

        assert exit_code == 1
        assert "❌" in capsys.readouterr().err


class TestAnalyzeCommand:

    @pytest.fixture
    def result_file(self, tmp_path):
        path = tmp_path / "results.json"
        path.write_text(json.dumps([
            {"test_path": "tests/a.spec.ts", "test_name": "slow", "status": "failed",
             "error": {"message": "Test timeout of 5000ms exceeded."}},
            {"test_path": "tests/b.spec.ts", "test_name": "down", "status": "failed",
             "error": {"message": "connect ECONNREFUSED 127.0.0.1:3000"}},
        ]))
        return path

    def test_text_output(self, result_file, capsys):
        assert main(["analyze", str(result_file)]) == 0

        out = capsys.readouterr().out
        assert "tests/a.spec.ts :: slow" in out
        assert "type: timeout" in out
        assert "type: network" in out

    def test_json_output(self, result_file, capsys):
        main(["analyze", str(result_file), "--json"])

        data = json.loads(capsys.readouterr().out)
        assert data["statistics"]["total"] == 2
        assert data["statistics"]["by_type"] == {"timeout": 1, "network": 1}

    def test_unreadable_file(self, tmp_path, capsys):
        path = tmp_path / "results.json"
        path.write_text("{broken")

        assert main(["analyze", str(path)]) == 1
        assert "Cannot read test result" in capsys.readouterr().err

    def test_passed_result_rejected(self, tmp_path, capsys):
        path = tmp_path / "result.json"
        path.write_text(json.dumps({"test_path": "tests/a.spec.ts", "test_name": "ok", "status": "passed"}))

        assert main(["analyze", str(path)]) == 1
