"""
AI Pair Orchestrator — The Loop

Deterministic driver of generate → apply → build → test. It never writes
code itself; it only coordinates collaborators and applies the retry
and escalation policy:

  - every cycle attempt counts against num_retries, whether it failed to
    generate, failed to build, or failed its tests
  - once the budget is spent, escalate to escalation_model at most once
    (hints and change history are kept, the counter restarts)
  - otherwise terminate in failure

Recoverable conditions are absorbed into CycleState. Only configuration
and environment errors (ConfigError, ToolchainError, anything unexpected)
escape, after the state has been marked terminated and published.
"""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from aipair.changes import ChangeTracker
from aipair.codegen import apply_generated_code
from aipair.config_loader import RunConfig
from aipair.identity import __codename__, __tagline__, __version__
from aipair.messages import MessageChannel
from aipair.prompts import PromptBuilder
from aipair.router import CodeGenerator, GenerationError, GeneratorFactory
from aipair.runner import Builder, Tester
from aipair.state import CycleState, TestResults

console = Console()

MAX_BUILD_HINTS = 5
_BUILD_ERROR_LINE = re.compile(r"\berror\b|cannot find symbol", re.IGNORECASE)


class RunResult(BaseModel):
    status: Literal["success", "failure", "stopped"]
    cycles: int = 0
    model: str = ""
    escalated: bool = False
    hints: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Hint synthesis
# ---------------------------------------------------------------------------

def hints_from_build(output: str) -> list[str]:
    """Turn compiler output into a handful of hints."""
    hints: list[str] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or not _BUILD_ERROR_LINE.search(line):
            continue
        hint = f"Fix compilation error: {line}"
        if hint not in hints:
            hints.append(hint)
        if len(hints) >= MAX_BUILD_HINTS:
            break
    return hints or ["The build failed; fix the compilation errors shown in the build output"]


def hints_from_tests(results: TestResults) -> list[str]:
    """One hint per failed or errored test."""
    hints = [f"Fix failing test: {test_id}" for test_id in sorted(results.failed_tests)]
    hints += [f"Fix test error in: {test_id}" for test_id in sorted(results.errored_tests)]
    return hints or ["The tests failed; see the test output for details"]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class CycleOrchestrator:
    """Runs cycles for one RunConfig against one CycleState."""

    def __init__(
        self,
        config: RunConfig,
        generator_factory: GeneratorFactory,
        builder: Builder,
        tester: Tester,
        state: CycleState | None = None,
        tracker: ChangeTracker | None = None,
        channel: MessageChannel | None = None,
        prompt_builder: PromptBuilder | None = None,
        stop_event: threading.Event | None = None,
        log: Any = logger,
    ):
        self.config = config
        self.generator_factory = generator_factory
        self.builder = builder
        self.tester = tester
        self.state = state if state is not None else CycleState()
        self.tracker = tracker or ChangeTracker(
            config.root_path, [config.source_path, config.test_path]
        )
        self.channel = channel
        self.prompt_builder = prompt_builder or PromptBuilder(config)
        self.stop_event = stop_event or threading.Event()
        self.log = log

        self._generator: CodeGenerator | None = None
        self._premium: CodeGenerator | None = None

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def stop(self) -> None:
        """Ask the run to halt at the next cycle boundary."""
        self.log.info("[CYCLE] Stop requested; halting after the current cycle")
        self.stop_event.set()

    def run(self, preflight: bool = False) -> RunResult:
        state = self.state
        state.active_model = self.config.model
        state.phase = "idle"
        state.outcome = None

        console.print(Panel(
            f"[bold green]Project:[/] {self.config.root_path}\n"
            f"[bold]Model:[/] {self.config.model}  |  "
            f"[bold]Retries:[/] {self.config.num_retries}  |  "
            f"[bold]Escalation:[/] "
            f"{self.config.escalation_model if self.config.escalate_to_premium_model else 'off'}",
            title=f"⚡ {__codename__} v{__version__}",
            subtitle=__tagline__,
            border_style="bright_green",
        ))

        try:
            self._generator = self.generator_factory(state.active_model)
            if self.config.escalate_to_premium_model and not state.escalated:
                # Surfaces a missing premium key before any cycle is spent
                self._premium = self.generator_factory(self.config.escalation_model)

            if preflight and self._preflight():
                return self._terminate("success")

            while True:
                passed = self._run_cycle()
                state.increment_generation_cycles()
                if passed:
                    return self._terminate("success")

                if not self._apply_policy():
                    return self._terminate("failure")

                if self.stop_event.is_set():
                    console.print("\n[yellow]⚡ Stopped by user.[/]")
                    return self._terminate("failure", stopped=True)

                state.reset_cycle_state()

        except Exception as e:
            self.log.error(f"[CYCLE] Run aborted: {e}")
            console.print(f"[red]💥 Error: {e}[/]")
            state.finish_cycle_record()
            state.phase = "terminated"
            state.outcome = "failure"
            self._emit_state()
            raise

    # -----------------------------------------------------------------------
    # One cycle
    # -----------------------------------------------------------------------

    def _run_cycle(self) -> bool:
        """Run steps 1-5 of a cycle. Returns True when the tests pass."""
        state = self.state
        model = state.active_model

        # 1. Open the cycle
        state.set_cycle_start_time()
        record = state.start_cycle_record(model)
        state.phase = "cycle_in_flight"
        cycle_dir = self._cycle_dir(record.cycle_number)
        cycle_dir.mkdir(parents=True, exist_ok=True)

        console.print(
            f"\n[bold]🔁 Cycle {record.cycle_number} "
            f"({model}, attempt {state.generation_cycles + 1}/{self.config.num_retries})...[/]"
        )
        self.log.info(f"[CYCLE] Starting cycle {record.cycle_number} with {model}")
        self._emit_state()

        # 2. Prompt
        prompt = self.prompt_builder.build(state)

        # 3. Generate
        record.mark("generation_start")
        try:
            generated = self._generator.generate_code(prompt)
        except GenerationError as e:
            record.mark("generation_end")
            self.log.error(f"[CYCLE] Code generation failed: {e}")
            console.print(f"[red]❌ Generation failed: {e}[/]")
            record.generation_error = str(e)
            state.add_hint(f"Code generation failed with {model}: {e}")
            state.last_run_output = str(e)
            self._write_artifact(cycle_dir / "generation.log", _generation_log(prompt, f"ERROR: {e}"))
            self._evaluate()
            return False
        record.mark("generation_end")
        self._write_artifact(cycle_dir / "generation.log", _generation_log(prompt, generated))

        # 4. Apply and diff
        before = self.tracker.snapshot()
        applied = apply_generated_code(
            self.config.root_path,
            generated,
            archive_dir=cycle_dir / "changes",
            protected_dirs=[self.config.test_path],
        )
        for entry in applied:
            console.print(f"  [cyan]{entry}[/]")
        state.record_changes(self.tracker.diff(before, self.tracker.snapshot()))

        # 5. Build, then test
        record.mark("build_start")
        build = self.builder.build(self.config)
        record.mark("build_end")
        state.build_state = build.state
        self._write_artifact(cycle_dir / "build_result.log", build.output)

        if not build.state.compiled_successfully:
            console.print("[red]❌ Build failed[/]")
            self.log.warning(f"[CYCLE] Build failed in cycle {record.cycle_number}")
            for hint in hints_from_build(build.output):
                state.add_hint(hint)
            state.last_run_output = build.output
            self._evaluate()
            return False

        record.mark("test_start")
        tests = self.tester.test(self.config)
        record.mark("test_end")
        state.test_results = tests.results
        state.last_run_output = "\n".join(o for o in (build.output, tests.output) if o)
        self._write_artifact(cycle_dir / "test_result.log", tests.output)

        if tests.results.passed:
            console.print(
                f"[green]✅ Tests pass! ({tests.results.total_tests} tests)[/]"
            )
            self._evaluate()
            return True

        failures = len(tests.results.failed_tests) + len(tests.results.errored_tests)
        console.print(
            f"[red]❌ Tests failed ({failures} of {tests.results.total_tests})[/]"
        )
        for hint in hints_from_tests(tests.results):
            state.add_hint(hint)
        self._evaluate()
        return False

    def _evaluate(self) -> None:
        self.state.finish_cycle_record()
        self.state.phase = "cycle_evaluated"
        self._emit_state()

    # -----------------------------------------------------------------------
    # Policy
    # -----------------------------------------------------------------------

    def _apply_policy(self) -> bool:
        """Step 6. Returns False when the run must terminate in failure."""
        state = self.state

        if state.generation_cycles < self.config.num_retries:
            return True

        if self.config.escalate_to_premium_model and not state.escalated:
            premium = self.config.escalation_model
            console.print(
                f"\n[bold yellow]🚀 Retry budget spent on {state.active_model}; "
                f"escalating to {premium}[/]"
            )
            self.log.warning(
                f"[CYCLE] Escalating from {state.active_model} to {premium} "
                f"after {state.generation_cycles} cycles"
            )
            self._generator = self._premium or self.generator_factory(premium)
            state.active_model = premium
            state.generation_cycles = 0
            state.escalated = True
            return True

        console.print(
            f"[red]❌ Retry budget exhausted after {len(state.cycles)} cycles.[/]"
        )
        self.log.warning("[CYCLE] Retry budget exhausted")
        return False

    # -----------------------------------------------------------------------
    # Preflight
    # -----------------------------------------------------------------------

    def _preflight(self) -> bool:
        """Build and test once before generating anything. True if already green."""
        state = self.state
        console.print("\n[bold dim]🔎 [PREFLIGHT] Building and testing current code...[/]")

        build = self.builder.build(self.config)
        state.build_state = build.state
        if not build.state.compiled_successfully:
            for hint in hints_from_build(build.output):
                state.add_hint(hint)
            state.last_run_output = build.output
            console.print("  [dim]Build fails; starting generation[/]")
            return False

        tests = self.tester.test(self.config)
        state.test_results = tests.results
        state.last_run_output = "\n".join(o for o in (build.output, tests.output) if o)
        if tests.results.passed:
            console.print("[green]✅ Tests already pass; nothing to do.[/]")
            return True

        for hint in hints_from_tests(tests.results):
            state.add_hint(hint)
        console.print(
            f"  [dim]{len(tests.results.failed_tests) + len(tests.results.errored_tests)} "
            f"failing tests; starting generation[/]"
        )
        return False

    # -----------------------------------------------------------------------
    # Termination + display
    # -----------------------------------------------------------------------

    def _terminate(self, outcome: Literal["success", "failure"], stopped: bool = False) -> RunResult:
        state = self.state
        state.phase = "terminated"
        state.outcome = outcome
        self._emit_state()

        status = "stopped" if stopped else outcome
        self.log.info(f"[CYCLE] Run finished: {status} after {len(state.cycles)} cycles")
        self._print_summary(status)

        return RunResult(
            status=status,
            cycles=len(state.cycles),
            model=state.active_model,
            escalated=state.escalated,
            hints=list(state.accumulated_hints),
        )

    def _print_summary(self, status: str) -> None:
        table = Table(title="Cycles", border_style="magenta")
        table.add_column("#", style="dim")
        table.add_column("Model")
        table.add_column("Build")
        table.add_column("Tests")
        table.add_column("Changes")

        for record in self.state.cycles:
            if record.generation_error:
                build, tests = "[red]no code[/]", "-"
            elif record.build_state and not record.build_state.compiled_successfully:
                build, tests = "[red]failed[/]", "-"
            else:
                results = record.test_results or TestResults()
                build = "[green]ok[/]"
                tests = (
                    f"[green]{results.total_tests} passed[/]" if results.passed
                    else f"[red]{len(results.failed_tests) + len(results.errored_tests)} failing[/]"
                )
            changes = len(record.code_changes.touched()) if record.code_changes else 0
            table.add_row(str(record.cycle_number), record.model, build, tests, str(changes))

        if self.state.cycles:
            console.print(table)

        color = {"success": "green", "failure": "red"}.get(status, "yellow")
        usage = getattr(self._generator, "usage", None)
        usage_line = ""
        if usage is not None and hasattr(usage, "summary"):
            summary = usage.summary()
            usage_line = (
                f"\nTokens: {summary['total_tokens']:,} / "
                f"Cost: ${summary['estimated_cost']:.4f} / "
                f"Calls: {summary['call_count']}"
            )
        console.print(Panel(
            f"Status: [bold {color}]{status.upper()}[/]  |  "
            f"Cycles: {len(self.state.cycles)}  |  "
            f"Model: {self.state.active_model}"
            f"{'  |  escalated' if self.state.escalated else ''}"
            f"{usage_line}",
            title="📊 Summary",
            border_style=color,
        ))

    # -----------------------------------------------------------------------
    # Utilities
    # -----------------------------------------------------------------------

    def _emit_state(self) -> None:
        if self.channel is not None:
            self.channel.emit("stateUpdate", self.state.to_message_payload())

    def _cycle_dir(self, cycle_number: int) -> Path:
        return self.config.work_path / f"generationCycle{cycle_number}"

    def _write_artifact(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content or "", encoding="utf-8")
        self.log.debug(f"[CYCLE] Wrote {path}")


def _generation_log(prompt: str, response: str) -> str:
    return f"=== PROMPT ===\n{prompt}\n\n=== RESPONSE ===\n{response}\n"
