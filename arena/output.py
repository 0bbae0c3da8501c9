"""Rich console output and markdown report files for battle records."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import Progress, TaskID
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from arena.models import BattleRecord, BattleStatus, RoundResult

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 50) -> str:
    """Return first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _score(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.2f}"


class ConsoleProgress:
    """ProgressSink that drives a rich Progress task description."""

    def __init__(self, progress: Progress, task_id: TaskID) -> None:
        self._progress = progress
        self._task_id = task_id

    def report(self, phase: str, percent: float, message: str) -> None:
        self._progress.update(self._task_id, description=f"[{phase}] {message}", completed=percent)


def print_round_summary(result: RoundResult) -> None:
    """Print the score table and champion preview for one round."""
    console.print(Rule(f"[bold cyan]Round {result.number} Summary[/bold cyan]"))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Participant")
    table.add_column("Score", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Evaluations", justify="right")
    table.add_column("Probes", justify="right")
    for candidate in result.candidates:
        pid = candidate.participant_id
        evals = sum(1 for e in result.evaluations if e.target_id == pid)
        probes = (
            f"{sum(p.passed for p in candidate.probe_results)}/{len(candidate.probe_results)}"
            if candidate.probe_results else "-"
        )
        name = f"[bold]{pid}[/bold]" if pid == result.champion else pid
        if candidate.fallback:
            name += " [red](placeholder)[/red]"
        table.add_row(name, _score(result.scores.get(pid)), f"{candidate.confidence:.1f}", str(evals), probes)
    console.print(table)

    flags = []
    if result.consensus_achieved:
        flags.append("[green]consensus[/green]")
    if result.plateau_detected:
        flags.append("[yellow]plateau[/yellow]")
    if result.degraded:
        flags.append("[red]degraded[/red]")
    champion = next((c for c in result.candidates if c.participant_id == result.champion), None)
    if champion is not None:
        console.print(
            Panel(
                _preview(champion.text),
                title=f"[bold]Champion: {result.champion}[/bold] ({_score(result.champion_score)})",
                subtitle=" ".join(flags) or f"spread {result.spread:.2f}",
                border_style="green" if result.consensus_achieved else "dim",
            )
        )


def print_battle_summary(record: BattleRecord) -> None:
    """Print the final outcome of a battle."""
    if record.status == BattleStatus.FAILED:
        console.print(Rule("[bold red]Battle Failed[/bold red]"))
        console.print(Text(record.error or "unknown error", style="red"))
        return

    console.print(Rule("[bold green]Battle Result[/bold green]"))
    console.print(
        Text(
            f"Winner: {record.winner} | "
            f"Rounds: {len(record.rounds)} | "
            f"Stop: {record.stop_reason.value if record.stop_reason else 'n/a'} | "
            f"Converged: {'yes' if record.converged else 'no'} | "
            f"Cost: ${record.total_cost:.4f}",
            style="dim",
        )
    )
    if record.final_text:
        console.print(Markdown(record.final_text))


def print_reliability(report: dict[str, dict]) -> None:
    """Print per-participant circuit and reliability state."""
    if not report:
        return
    table = Table(title="Participant reliability", show_header=True, header_style="bold")
    table.add_column("Participant")
    table.add_column("Circuit")
    table.add_column("Class")
    table.add_column("Success", justify="right")
    table.add_column("Latency", justify="right")
    for pid, info in report.items():
        table.add_row(
            pid,
            info["status"],
            info["classification"],
            f"{info['success_rate']:.0%}",
            f"{info['avg_latency_sec']:.1f}s",
        )
    console.print(table)


def save_report(record: BattleRecord, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the full battle transcript as a markdown file.

    Args:
        record: The finished BattleRecord.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the task text. Useful for inbox mode.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(record.task)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    req = record.requirements
    lines: list[str] = [
        f"# Battle: {record.task[:80]}",
        "",
        f"**Battle ID:** {record.id}",
        f"**Kind:** {record.kind.value}",
        f"**Category:** {req.category.value if req else 'n/a'}",
        f"**Roster:** {', '.join(record.roster)}",
        f"**Status:** {record.status.value}",
        f"**Stop reason:** {record.stop_reason.value if record.stop_reason else 'n/a'}",
        f"**Winner:** {record.winner or 'none'}",
        f"**Rounds:** {len(record.rounds)}",
        f"**Total cost:** ${record.total_cost:.4f}",
        f"**Started:** {record.started_at}",
        f"**Finished:** {record.finished_at or 'n/a'}",
        "",
        "---",
        "",
    ]
    if record.error:
        lines += [f"**Error:** {record.error}", ""]

    for rnd in record.rounds:
        lines.append(f"## Round {rnd.number}")
        lines.append("")
        lines.append(
            f"*Champion: {rnd.champion} ({_score(rnd.champion_score)}) | "
            f"consensus: {'yes' if rnd.consensus_achieved else 'no'} "
            f"(strength {rnd.consensus_strength:.2f}) | "
            f"plateau: {'yes' if rnd.plateau_detected else 'no'} | spread: {rnd.spread:.2f}*"
        )
        lines.append("")
        for candidate in rnd.candidates:
            label = candidate.participant_id + (" (placeholder)" if candidate.fallback else "")
            lines.append(f"### {label}: {_score(rnd.scores.get(candidate.participant_id))}")
            lines.append("")
            lines.append(candidate.text)
            lines.append("")
            if candidate.rationale:
                lines.append(f"*Rationale: {candidate.rationale}*")
                lines.append("")
            for i, revision in enumerate(candidate.revisions, start=1):
                lines.append(f"*Revision {i}: {revision.rationale}*")
                lines.append("")
            for evaluation in rnd.evaluations:
                if evaluation.target_id != candidate.participant_id:
                    continue
                subs = ", ".join(f"{k} {v:g}" for k, v in evaluation.scores.items())
                lines.append(f"- **{evaluation.evaluator_id}** ({evaluation.overall:.2f}; {subs}): "
                             f"{evaluation.rationale}")
            lines.append("")

    if record.final_text:
        lines += ["## Final Text", "", record.final_text, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Battle report saved to: %s", filepath)
    return filepath
