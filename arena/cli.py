"""Click CLI: config loading, participant setup, battle run, and output."""

import asyncio
import logging
import random
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from arena.catalog import StaticCatalog
from arena.convergence import BattleRunner
from arena.healthcheck import run_health_checks
from arena.inbox import archive_file, ensure_dirs, load_task, scan_inbox
from arena.models import BattleKind, BattleRecord, BattleStatus
from arena.output import (
    ConsoleProgress,
    print_battle_summary,
    print_reliability,
    print_round_summary,
    save_report,
)
from arena.providers.anthropic import AnthropicProvider
from arena.providers.base import AIProvider, TextGenerationService
from arena.providers.gemini import GeminiProvider
from arena.providers.openai_provider import OpenAIProvider
from arena.resilience import EngineState
from arena.store import JsonBattleStore

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# settings.yaml "sdk" value -> provider class; groq and xai speak the OpenAI API
SDK_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "groq": OpenAIProvider,
    "xai": OpenAIProvider,
}

_KIND_CHOICES = [k.value for k in BattleKind]


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by participant id."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        provider_class = SDK_CLASSES.get(model_cfg.sdk)
        if provider_class is None:
            logging.warning("Participant '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = provider_class(model_cfg)
        except Exception as exc:
            logging.warning("Failed to instantiate participant '%s': %s", name, exc)
    return providers


def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking participants...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(
        run_health_checks(TextGenerationService(all_providers))
    )

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No participants passed the health check.")
        sys.exit(1)

    console.print(
        f"\n[yellow]{len(failed_names)} participant(s) failed:[/yellow] {', '.join(failed_names)}"
    )
    console.print(f"Working participants: {', '.join(sorted(working))}")

    if not click.confirm("Continue with working participants only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _resolve_roster(models_arg: str | list[str] | None, all_providers: dict[str, AIProvider]) -> list[str] | None:
    """Explicit roster from --models / front matter, limited to working participants."""
    if not models_arg:
        return None
    names = [m.strip() for m in models_arg.split(",")] if isinstance(models_arg, str) else list(models_arg)
    missing = [n for n in names if n not in all_providers]
    if missing:
        logger.warning("Ignoring unavailable participants: %s", ", ".join(missing))
    return [n for n in names if n in all_providers]


async def _run_single(
    task_text: str,
    config: AppConfig,
    all_providers: dict[str, AIProvider],
    catalog: StaticCatalog,
    state: EngineState,
    kind: BattleKind,
    rounds: int | None,
    threshold: float | None,
    roster: list[str] | None,
    output_dir: Path,
    seed: int | None,
    slug_override: str | None = None,
) -> BattleRecord:
    """Run a single battle, print the outcome and save the report."""
    if roster is not None and len(roster) < 2:
        raise click.UsageError(
            f"Need at least 2 participants, got {len(roster)}. Check API keys in .env or adjust --models."
        )

    service = TextGenerationService(all_providers)
    store = JsonBattleStore(config.defaults.store_dir)
    rng = random.Random(seed if seed is not None else config.defaults.seed)

    console.print(f"\n[bold cyan]Battle Arena[/bold cyan] — {kind.value}, up to "
                  f"{rounds or config.defaults.max_rounds} rounds")
    console.print(f"Task: [italic]{task_text[:80]}{'...' if len(task_text) > 80 else ''}[/italic]\n")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        progress_task = progress.add_task("Starting battle...", total=100)
        runner = BattleRunner(
            config,
            service,
            catalog,
            store=store,
            state=state,
            progress=ConsoleProgress(progress, progress_task),
            rng=rng,
        )
        record = await runner.run(
            task_text,
            kind=kind,
            roster=roster,
            max_rounds=rounds,
            quality_threshold=threshold,
        )

    for rnd in record.rounds:
        print_round_summary(rnd)

    print_battle_summary(record)
    print_reliability(state.reliability_report())

    saved_path = save_report(record, output_dir, slug_override=slug_override)
    console.print(f"\n[dim]Report: {saved_path}[/dim]")
    if not record.persisted:
        console.print(f"[yellow]Battle record not saved:[/yellow] {record.persistence_error}")
    return record


async def _run_inbox(
    config: AppConfig,
    all_providers: dict[str, AIProvider],
    catalog: StaticCatalog,
    inbox_dir: Path,
    archive_dir: Path,
    kind_cli: BattleKind | None,
    rounds_cli: int | None,
    threshold_cli: float | None,
    models_cli: str | None,
    output_dir: Path,
    seed: int | None,
) -> None:
    """Process all .md task files in the inbox folder.

    Precedence for per-file settings: CLI flag > front matter > config default.
    """
    ensure_dirs(inbox_dir, archive_dir)
    files = scan_inbox(inbox_dir)

    if not files:
        click.echo("No files in inbox.")
        return

    async with EngineState(config.resilience) as state:
        for file_path in files:
            try:
                task = load_task(file_path)
                record = await _run_single(
                    task_text=task.text,
                    config=config,
                    all_providers=all_providers,
                    catalog=catalog,
                    state=state,
                    kind=kind_cli or task.kind or BattleKind(config.defaults.kind),
                    rounds=rounds_cli if rounds_cli is not None else task.rounds,
                    threshold=threshold_cli if threshold_cli is not None else task.threshold,
                    roster=_resolve_roster(models_cli if models_cli is not None else task.models, all_providers),
                    output_dir=output_dir,
                    seed=seed,
                    slug_override=file_path.stem,
                )
            except Exception as e:
                logger.error("Failed: %s -- %s", file_path.name, e)
                archive_file(file_path, archive_dir, failed=True)
                continue

            failed = record.status == BattleStatus.FAILED
            archived = archive_file(file_path, archive_dir, failed=failed)
            click.echo(f"Processed: {file_path.name} -> {record.status.value} (archived: {archived.name})")


@click.command()
@click.argument("task", required=False)
@click.option("--file", "task_file", type=click.Path(exists=True), help="Read the task from a .md file")
@click.option("--kind", type=click.Choice(_KIND_CHOICES), default=None,
              help="Battle kind (default: from config)")
@click.option("--rounds", default=None, type=int, help="Maximum number of rounds (default: from config)")
@click.option("--threshold", default=None, type=float,
              help="Consensus quality bar on the 1-10 scale (default: from config)")
@click.option("--models", default=None, help="Comma-separated participant ids, overrides selection")
@click.option("--output", "output_path", default=None, help="Report directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--inbox", "use_inbox", is_flag=True, default=False,
              help="Process all .md files in inbox folder")
@click.option("--inbox-dir", "inbox_dir_override", default=None,
              help="Override inbox folder path (default: from config)")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--seed", default=None, type=int, help="Seed for reproducible participant selection")
def main(
    task: str | None,
    task_file: str | None,
    kind: str | None,
    rounds: int | None,
    threshold: float | None,
    models: str | None,
    output_path: str | None,
    verbose: bool,
    use_inbox: bool,
    inbox_dir_override: str | None,
    skip_health_check: bool,
    seed: int | None,
) -> None:
    """Battle Arena -- multi-model prompt and answer battles with consensus scoring.

    \b
    Examples:
      arena "Write a system prompt for a SQL tutor" --kind system_prompt
      arena "Explain CAP theorem" --kind answer --models llama-70b,claude
      arena "Plan a product launch" --rounds 5 --threshold 9.0
      arena --file task.md --seed 7
      arena --inbox
      arena --inbox --inbox-dir ./my_queue
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model output containing
    # Unicode chars doesn't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    effective_output = Path(output_path) if output_path else config.defaults.output_dir
    battle_kind = BattleKind(kind) if kind else None

    all_providers = _build_all_providers(config)

    if len(all_providers) < 2:
        console.print("[bold red]Error:[/bold red] Need at least 2 participants. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        all_providers = _check_and_filter_providers(all_providers)

    catalog = StaticCatalog.from_config(config.models, available=set(all_providers))

    if use_inbox:
        inbox_dir = Path(inbox_dir_override) if inbox_dir_override else config.inbox.dir
        asyncio.run(
            _run_inbox(
                config=config,
                all_providers=all_providers,
                catalog=catalog,
                inbox_dir=inbox_dir,
                archive_dir=config.inbox.archive_dir,
                kind_cli=battle_kind,
                rounds_cli=rounds,          # raw CLI value (None if not specified)
                threshold_cli=threshold,
                models_cli=models,
                output_dir=effective_output,
                seed=seed,
            )
        )
        return

    if task_file:
        task_text = Path(task_file).read_text(encoding="utf-8").strip()
    elif task:
        task_text = task
    else:
        console.print("[bold red]Error:[/bold red] Provide a TASK argument, --file, or --inbox.")
        sys.exit(1)

    async def _single() -> BattleRecord:
        async with EngineState(config.resilience) as state:
            return await _run_single(
                task_text=task_text,
                config=config,
                all_providers=all_providers,
                catalog=catalog,
                state=state,
                kind=battle_kind or BattleKind(config.defaults.kind),
                rounds=rounds,
                threshold=threshold,
                roster=_resolve_roster(models, all_providers),
                output_dir=effective_output,
                seed=seed,
            )

    record = asyncio.run(_single())
    if record.status == BattleStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
