"""
AI Pair CLI — The Interface

Three modes:
  1. ai-pair run           (generate → build → test until green, then exit)
  2. ai-pair interactive   (menu: continue, hint, watch, exit)
  3. ai-pair watch         (re-run whenever src/test files change)

Plus utilities:
  - ai-pair status         (check config, API keys and toolchain)
  - ai-pair init [path]    (bootstrap ai-pair-config.json in a project)
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from aipair.changes import ChangeTracker
from aipair.config_loader import (
    BUNDLED_PROMPTS,
    DEFAULT_CONFIG_FILE,
    PROMPT_FILES,
    ConfigError,
    RunConfig,
    load_config,
    validate_api_keys,
)
from aipair.identity import BANNER, __codename__, __tagline__, __version__
from aipair.runner import ToolchainError, detect_commands
from aipair.session import LOG_FILE_FORMAT, LOG_FILE_NAME, PairSession
from aipair.watcher import ChangeWatcher

load_dotenv()

app = typer.Typer(
    name="ai-pair",
    help=f"{__codename__} — {__tagline__}\nAutomated generate/build/test pair programmer.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Options shared by every command that builds a RunConfig
MODEL_OPTION = typer.Option(None, "--model", "-m", help="Model to generate code with (default: gpt-4o)")
ROOT_OPTION = typer.Option(None, "--project-root", "-p", help="Root of the project to work on")
EXTENSION_OPTION = typer.Option(None, "--extension", "-e", help="Source file extension (default: .java)")
TEST_DIR_OPTION = typer.Option(None, "--test-dir", help="Test source directory (default: src/test/java)")
LOG_LEVEL_OPTION = typer.Option(None, "--log-level", "-l", help="debug, info, warn or error")
TMP_DIR_OPTION = typer.Option(None, "--tmp-dir", help="Directory for logs and per-cycle artifacts")
PROMPTS_OPTION = typer.Option(None, "--prompts-path", help="Directory holding the prompt templates")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help=f"Config file (default: ./{DEFAULT_CONFIG_FILE})")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    model: Optional[str] = MODEL_OPTION,
    project_root: Optional[Path] = ROOT_OPTION,
    extension: Optional[str] = EXTENSION_OPTION,
    test_dir: Optional[str] = TEST_DIR_OPTION,
    log_level: Optional[str] = LOG_LEVEL_OPTION,
    tmp_dir: Optional[str] = TMP_DIR_OPTION,
    prompts_path: Optional[str] = PROMPTS_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
    hint: Optional[str] = typer.Option(None, "--hint", help="Seed a hint before the first cycle"),
    escalate: Optional[bool] = typer.Option(
        None, "--escalate/--no-escalate", help="Escalate to the premium model once the retries are spent"
    ),
    preflight: bool = typer.Option(False, "--preflight", help="Build and test once before generating"),
    build_cmd: Optional[str] = typer.Option(None, "--build-cmd", help="Build command (auto-detected)"),
    test_cmd: Optional[str] = typer.Option(None, "--test-cmd", "-t", help="Test command (auto-detected)"),
):
    """Run generate → build → test cycles until the tests pass or the retries run out."""
    _print_banner()

    config = _load(
        config_file,
        model=model,
        project_root=project_root,
        extension=extension,
        test_dir=test_dir,
        log_level=log_level,
        tmp_dir=tmp_dir,
        prompts_path=prompts_path,
        escalate_to_premium_model=escalate,
        build_command=build_cmd,
        test_command=test_cmd,
    )
    _prepare_work_dir(config)

    with PairSession(config, preflight=preflight) as session:
        session.start(hint=hint)
        result = _wait(session)

        if result is not None and config.auto_watch:
            _watch(session, config)

    status = result.status if result is not None else "error"
    status_color = {"success": "green", "stopped": "yellow"}.get(status, "red")
    console.print(f"\n[bold {status_color}]Status: {status}[/]")

    if status != "success":
        raise typer.Exit(1)


@app.command()
def interactive(
    model: Optional[str] = MODEL_OPTION,
    project_root: Optional[Path] = ROOT_OPTION,
    extension: Optional[str] = EXTENSION_OPTION,
    test_dir: Optional[str] = TEST_DIR_OPTION,
    log_level: Optional[str] = LOG_LEVEL_OPTION,
    tmp_dir: Optional[str] = TMP_DIR_OPTION,
    prompts_path: Optional[str] = PROMPTS_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
):
    """Interactive mode: continue, give hints or watch, one choice at a time."""
    _print_banner()

    config = _load(
        config_file,
        model=model,
        project_root=project_root,
        extension=extension,
        test_dir=test_dir,
        log_level=log_level,
        tmp_dir=tmp_dir,
        prompts_path=prompts_path,
    )
    _prepare_work_dir(config)
    console.print(f"[bold]Starting {__codename__} with model:[/] {config.model}")

    with PairSession(config) as session:
        while True:
            console.print("\n[bold]Select an action:[/]")
            console.print("  [cyan]c[/] or [cyan]\\[enter][/] - Continue and force code generation")
            console.print("  [cyan]w[/] - Watch code files for changes")
            console.print("  [cyan]h[/] - Provide a hint")
            console.print("  [cyan]x[/] or [cyan]e[/] - Exit")
            action = typer.prompt("Enter your choice", default="", show_default=False).strip().lower()

            if action in ("c", ""):
                console.print("[dim]Forcing code generation...[/]")
                session.start(fresh=False, preflight=False)
                _wait(session)
            elif action == "h":
                hint = typer.prompt("Enter your hint")
                session.start(hint=hint, fresh=False, preflight=False)
                _wait(session)
            elif action == "w":
                _watch(session, config)
            elif action in ("x", "e"):
                console.print(f"Exiting {__codename__}.")
                break
            else:
                console.print("[yellow]Invalid choice. Please try again.[/]")


@app.command()
def watch(
    model: Optional[str] = MODEL_OPTION,
    project_root: Optional[Path] = ROOT_OPTION,
    extension: Optional[str] = EXTENSION_OPTION,
    test_dir: Optional[str] = TEST_DIR_OPTION,
    log_level: Optional[str] = LOG_LEVEL_OPTION,
    tmp_dir: Optional[str] = TMP_DIR_OPTION,
    prompts_path: Optional[str] = PROMPTS_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
):
    """Watch the source and test trees; run cycles whenever they change."""
    _print_banner()

    config = _load(
        config_file,
        model=model,
        project_root=project_root,
        extension=extension,
        test_dir=test_dir,
        log_level=log_level,
        tmp_dir=tmp_dir,
        prompts_path=prompts_path,
    )
    _prepare_work_dir(config)

    with PairSession(config) as session:
        _watch(session, config)


@app.command()
def status(
    config_file: Optional[Path] = CONFIG_OPTION,
    project_root: Optional[Path] = ROOT_OPTION,
):
    """Check AI Pair configuration and readiness."""
    _print_banner()

    # API Keys
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    # Config
    try:
        config = load_config(
            flags={"project_root": str(project_root) if project_root else None},
            config_file=config_file,
        )
    except (ConfigError, ValidationError) as e:
        console.print(f"\n[yellow]⚠ Configuration incomplete: {e}[/]")
        config = None

    if config is not None:
        config_table = Table(title="Configuration", border_style="magenta")
        config_table.add_column("Setting")
        config_table.add_column("Value")
        for key, value in config.public_dict().items():
            if key in ("systemPrompt", "promptTemplate", "noIssuePromptTemplate"):
                value = f"{len(value):,} chars"
            config_table.add_row(key, str(value))
        console.print(config_table)

        build, test = detect_commands(config.root_path, config.test_results_path)
        console.print("\n[bold]Toolchain:[/]")
        console.print(f"  Build: {config.build_command or build or '[dim]none[/]'}")
        console.print(f"  Test:  {config.test_command or test or '[red]not detected[/]'}")

    # Tools
    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    for tool in ["java", "gradle", "mvn", "npm", "python3", "cargo", "go", "make"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)

    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to the project"),
    copy_prompts: bool = typer.Option(
        False, "--copy-prompts", help="Copy the bundled prompt templates into the project for editing"
    ),
):
    """Create an ai-pair-config.json in a project."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    config_path = repo / DEFAULT_CONFIG_FILE

    settings: dict[str, Any] = {
        "model": "gpt-4o",
        "escalationModel": "o1-preview",
        "escalateToPremiumModel": False,
        "srcDir": "src/main/java",
        "testSourceDir": "src/test/java",
        "extension": ".java",
        "tmpDir": ".ai-pair",
        "logLevel": "info",
        "numRetries": 3,
    }

    if copy_prompts:
        prompts_dir = repo / ".ai-pair-prompts"
        prompts_dir.mkdir(exist_ok=True)
        for filename in PROMPT_FILES.values():
            target = prompts_dir / filename
            if not target.exists():
                shutil.copyfile(BUNDLED_PROMPTS / filename, target)
        settings["promptsPath"] = str(prompts_dir.relative_to(repo))
        console.print(f"  Prompts: {prompts_dir}")

    if config_path.exists():
        console.print(f"[yellow]⚠ {config_path} already exists; leaving it untouched[/]")
    else:
        config_path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")

    # Add to .gitignore
    gitignore = repo / ".gitignore"
    entry = ".ai-pair/"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry not in content:
            with open(gitignore, "a") as f:
                f.write(f"\n# AI Pair\n{entry}\n")
    else:
        gitignore.write_text(f"# AI Pair\n{entry}\n")

    console.print(f"[green]✅ Initialized {__codename__} in {repo}[/]")
    console.print(f"  Config:  {config_path}")
    console.print("  [dim]API keys are read from ANTHROPIC_API_KEY / OPENAI_API_KEY / GEMINI_API_KEY or .env[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(config_file: Path | None, **flags: Any) -> RunConfig:
    if flags.get("project_root") is not None:
        flags["project_root"] = str(flags["project_root"])
    try:
        return load_config(flags=flags, config_file=config_file)
    except (ConfigError, ValidationError) as e:
        console.print(f"[red]🚫 Configuration error: {e}[/]")
        raise typer.Exit(1)


def _prepare_work_dir(config: RunConfig) -> None:
    """Clear artifacts of earlier runs, then route logging into the work dir."""
    work = config.work_path
    work.mkdir(parents=True, exist_ok=True)
    for stale in work.glob("generationCycle*"):
        if stale.is_dir():
            shutil.rmtree(stale)

    try:
        _configure_logging(config.log_level, work / LOG_FILE_NAME)
    except ValueError as e:
        console.print(f"[red]🚫 Invalid log level: {config.log_level} ({e})[/]")
        raise typer.Exit(1)


def _wait(session: PairSession):
    """Wait for the session's run; Ctrl-C asks it to stop at the next boundary."""
    try:
        try:
            return session.wait()
        except KeyboardInterrupt:
            console.print("\n[yellow]⚡ Interrupted by human. Finishing the current cycle...[/]")
            session.stop()
            return session.wait()
    except (ConfigError, ToolchainError) as e:
        console.print(f"[red]💥 {e}[/]")
        return None


def _watch(session: PairSession, config: RunConfig) -> None:
    tracker = ChangeTracker(config.root_path, [config.source_path, config.test_path])

    def _on_change(summary) -> None:
        console.print(
            f"\n[cyan]👀 {len(summary.touched())} file(s) changed; running cycles...[/]"
        )
        session.start(fresh=False, preflight=True)
        _wait(session)

    watcher = ChangeWatcher(tracker, _on_change, interval=config.watch_interval)
    console.print("[bold]Watching for file changes...[/] [dim](Ctrl-C to stop)[/]")
    try:
        watcher.run()
    except KeyboardInterrupt:
        watcher.stop()
        console.print("\n[yellow]Stopped watching.[/]")


_LEVELS = {"warn": "WARNING"}


def _configure_logging(level: str, log_file: Path | None = None) -> None:
    level = _LEVELS.get(level.lower(), level.upper())
    logger.remove()
    if level == "DEBUG":
        logger.add(
            lambda msg: console.print(msg, style="dim", highlight=False, markup=False, end=""),
            level=level,
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg, highlight=False, markup=False, end=""),
            level=level,
            format="{message}",
        )
    if log_file is not None:
        logger.add(log_file, level="DEBUG", format=LOG_FILE_FORMAT, encoding="utf-8")


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
