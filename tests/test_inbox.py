"""Unit tests for arena/inbox.py — no API calls."""

import textwrap
from pathlib import Path

import pytest

from arena.inbox import archive_file, ensure_dirs, load_task, scan_inbox
from arena.models import BattleKind


def test_load_task_no_frontmatter(tmp_path: Path) -> None:
    """File without frontmatter returns the full body and no overrides."""
    f = tmp_path / "task.md"
    f.write_text("Write a system prompt for a SQL tutor", encoding="utf-8")
    task = load_task(f)
    assert task.text == "Write a system prompt for a SQL tutor"
    assert task.kind is None
    assert task.rounds is None
    assert task.models is None
    assert task.path == f


def test_load_task_with_frontmatter(tmp_path: Path) -> None:
    """Front matter keys become typed overrides."""
    f = tmp_path / "task.md"
    f.write_text(
        textwrap.dedent("""\
            ---
            kind: answer
            rounds: 1
            threshold: 9
            models: claude,llama-70b
            ---
            Explain the CAP theorem with one example.
        """),
        encoding="utf-8",
    )
    task = load_task(f)
    assert task.text == "Explain the CAP theorem with one example."
    assert task.kind == BattleKind.ANSWER
    assert task.rounds == 1
    assert task.threshold == 9.0
    assert task.models == ["claude", "llama-70b"]


def test_load_task_models_as_list(tmp_path: Path) -> None:
    f = tmp_path / "task.md"
    f.write_text("---\nmodels: [claude, qwen]\n---\nPlan a launch", encoding="utf-8")
    assert load_task(f).models == ["claude", "qwen"]


def test_load_task_unknown_keys_warn(tmp_path: Path, caplog) -> None:
    f = tmp_path / "task.md"
    f.write_text("---\nfull: true\n---\nPlan a launch", encoding="utf-8")
    task = load_task(f)
    assert task.text == "Plan a launch"
    assert "full" in caplog.text


def test_load_task_empty_body_raises(tmp_path: Path) -> None:
    f = tmp_path / "empty.md"
    f.write_text("---\nrounds: 2\n---\n\n", encoding="utf-8")
    with pytest.raises(ValueError, match="empty"):
        load_task(f)


def test_load_task_invalid_kind_raises(tmp_path: Path) -> None:
    f = tmp_path / "bad.md"
    f.write_text("---\nkind: essay\n---\nWrite something", encoding="utf-8")
    with pytest.raises(ValueError):
        load_task(f)


def test_archive_file_success(tmp_path: Path) -> None:
    """archive_file() moves file to archive dir with timestamp prefix."""
    inbox = tmp_path / "inbox"
    archive = tmp_path / "archive"
    ensure_dirs(inbox, archive)

    src = inbox / "my-task.md"
    src.write_text("A task", encoding="utf-8")

    dest = archive_file(src, archive)

    assert not src.exists(), "Source should be moved"
    assert dest.exists(), "Destination should exist"
    assert dest.parent == archive
    # Timestamp prefix: YYYY-MM-DDTHHMM_my-task.md
    assert dest.name.endswith("_my-task.md")
    assert not dest.name.startswith("FAILED_")


def test_archive_file_failed(tmp_path: Path) -> None:
    """archive_file(failed=True) prefixes filename with FAILED_."""
    inbox = tmp_path / "inbox"
    archive = tmp_path / "archive"
    ensure_dirs(inbox, archive)

    src = inbox / "broken.md"
    src.write_text("Bad task", encoding="utf-8")

    dest = archive_file(src, archive, failed=True)

    assert not src.exists()
    assert dest.name.startswith("FAILED_")
    assert "broken.md" in dest.name


def test_scan_inbox_only_markdown(tmp_path: Path) -> None:
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    (inbox / "a.md").write_text("A", encoding="utf-8")
    (inbox / "notes.txt").write_text("skip", encoding="utf-8")
    assert [p.name for p in scan_inbox(inbox)] == ["a.md"]


def test_scan_inbox_empty(tmp_path: Path) -> None:
    """scan_inbox() on an empty directory returns an empty list."""
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    assert scan_inbox(inbox) == []
