"""Inbox folder scanning, task front matter parsing, and archive logic."""

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import frontmatter

from arena.models import BattleKind

logger = logging.getLogger(__name__)


@dataclass
class InboxTask:
    path: Path
    text: str
    kind: BattleKind | None = None
    rounds: int | None = None
    threshold: float | None = None
    models: list[str] | None = None


def ensure_dirs(inbox_dir: Path, archive_dir: Path) -> None:
    """Create inbox and archive directories if they don't exist."""
    inbox_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Return all .md task files in inbox_dir, oldest first."""
    files = list(inbox_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)


def _parse_models(value) -> list[str]:
    if isinstance(value, str):
        return [m.strip() for m in value.split(",") if m.strip()]
    return [str(m).strip() for m in value]


def load_task(file_path: Path) -> InboxTask:
    """Parse a task file with optional YAML front matter.

    Recognized keys: ``kind`` (system_prompt | user_prompt | answer),
    ``rounds`` (int), ``threshold`` (float), ``models`` (list or
    comma-separated string). Unknown keys are logged and ignored.

    Raises:
        ValueError: If the body is empty or a key has an invalid value.
    """
    post = frontmatter.load(str(file_path))
    text = post.content.strip()
    if not text:
        raise ValueError(f"{file_path.name}: task body is empty")

    meta = dict(post.metadata)
    unknown = set(meta) - {"kind", "rounds", "threshold", "models"}
    if unknown:
        logger.warning("%s: ignoring unknown front matter keys: %s", file_path.name, ", ".join(sorted(unknown)))

    return InboxTask(
        path=file_path,
        text=text,
        kind=BattleKind(meta["kind"]) if "kind" in meta else None,
        rounds=int(meta["rounds"]) if "rounds" in meta else None,
        threshold=float(meta["threshold"]) if "threshold" in meta else None,
        models=_parse_models(meta["models"]) if "models" in meta else None,
    )


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move file to archive_dir with a timestamp prefix.

    Args:
        file_path: Source file to archive.
        archive_dir: Destination directory.
        failed: If True, prefix filename with "FAILED_".

    Returns:
        Path to the archived file.
    """
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M")
    prefix = "FAILED_" if failed else ""
    dest = archive_dir / f"{prefix}{timestamp}_{file_path.name}"
    shutil.move(str(file_path), str(dest))
    return dest
