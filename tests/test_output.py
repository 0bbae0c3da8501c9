"""Tests for arena/output.py."""

from pathlib import Path

import pytest

from arena.models import (
    BattleKind,
    BattleRecord,
    BattleStatus,
    Candidate,
    Evaluation,
    RoundResult,
    StopReason,
)
from arena.output import (
    _preview,
    _slug,
    print_battle_summary,
    print_reliability,
    print_round_summary,
    save_report,
)
from arena.requirements import normalize


def test_slug_basic():
    assert _slug("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    long_text = "a" * 100
    assert len(_slug(long_text)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


def test_preview_truncates():
    assert _preview("one two three", words=2) == "one two..."
    assert _preview("one two", words=2) == "one two"


@pytest.fixture
def sample_record() -> BattleRecord:
    task = "Write a system prompt for a YAML linter"
    rnd = RoundResult(
        number=1,
        candidates=[
            Candidate("claude", "You are a meticulous YAML reviewer.", 8.0, rationale="Named the role."),
            Candidate("qwen", "Placeholder text.", 1.0, fallback=True),
        ],
        evaluations=[
            Evaluation("qwen", "claude", {"clarity": 9.0}, "Sharp.", overall=9.0),
        ],
        scores={"claude": 9.0, "qwen": None},
        champion="claude",
        champion_score=9.0,
        consensus_strength=1.0,
    )
    return BattleRecord(
        id="abc123",
        kind=BattleKind.SYSTEM_PROMPT,
        task=task,
        requirements=normalize(task, BattleKind.SYSTEM_PROMPT),
        roster=["claude", "qwen"],
        rounds=[rnd],
        winner="claude",
        final_text="You are a meticulous YAML reviewer.",
        total_cost=0.0123,
        status=BattleStatus.COMPLETED,
        stop_reason=StopReason.BUDGET,
        started_at="2026-01-01T00:00:00+00:00",
        finished_at="2026-01-01T00:01:00+00:00",
    )


def test_save_report_creates_file(tmp_path: Path, sample_record: BattleRecord):
    saved = save_report(sample_record, tmp_path / "output")
    assert saved.exists()
    assert saved.suffix == ".md"


def test_save_report_creates_output_dir(tmp_path: Path, sample_record: BattleRecord):
    output_dir = tmp_path / "nested" / "output"
    assert not output_dir.exists()
    save_report(sample_record, output_dir)
    assert output_dir.exists()


def test_save_report_content(tmp_path: Path, sample_record: BattleRecord):
    content = save_report(sample_record, tmp_path).read_text(encoding="utf-8")
    assert "# Battle: Write a system prompt" in content
    assert "**Battle ID:** abc123" in content
    assert "**Kind:** system_prompt" in content
    assert "**Stop reason:** budget" in content
    assert "## Round 1" in content
    assert "qwen (placeholder)" in content
    assert "**qwen** (9.00; clarity 9): Sharp." in content
    assert "## Final Text" in content


def test_save_report_failed_battle(tmp_path: Path, sample_record: BattleRecord):
    sample_record.status = BattleStatus.FAILED
    sample_record.error = "KeyError: 'task'"
    sample_record.rounds = []
    sample_record.final_text = None
    content = save_report(sample_record, tmp_path).read_text(encoding="utf-8")
    assert "**Status:** failed" in content
    assert "**Error:** KeyError: 'task'" in content
    assert "## Final Text" not in content


def test_save_report_filename_has_slug(tmp_path: Path, sample_record: BattleRecord):
    saved = save_report(sample_record, tmp_path)
    assert "yaml" in saved.name


def test_save_report_slug_override(tmp_path: Path, sample_record: BattleRecord):
    saved = save_report(sample_record, tmp_path, slug_override="inbox-item")
    assert saved.name.endswith("_inbox-item.md")


def test_console_printers_do_not_raise(sample_record: BattleRecord):
    print_round_summary(sample_record.rounds[0])
    print_battle_summary(sample_record)
    print_reliability({"claude": {"status": "closed", "classification": "excellent",
                                  "success_rate": 1.0, "avg_latency_sec": 1.2, "samples": 4}})
