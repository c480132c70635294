"""
AI Pair Session — the service an observer talks to.

Owns one MessageChannel and one CycleState, and runs at most one
orchestrator at a time on a single worker thread. Inbound requests
(startAIPair, stopAIPair, view*Log, ...) arrive through the channel;
everything the observer sees goes back out through it as snapshots.
"""

from __future__ import annotations

import concurrent.futures
import copy
import difflib
import re
import threading
from pathlib import Path
from typing import Any

from loguru import logger

from aipair.config_loader import RunConfig
from aipair.messages import Message, MessageChannel
from aipair.orchestrator import CycleOrchestrator, RunResult
from aipair.router import GeneratorFactory, router_factory
from aipair.runner import ProjectRunner
from aipair.state import CycleState

LOG_FILE_NAME = "ai-pair.log"
LOG_FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSS!UTC}Z [{level}] {message}"

_LOG_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\s+\[[^\]]+\]\s+")

ARTIFACTS = {
    "viewGenerationLog": "generation.log",
    "viewBuildLog": "build_result.log",
    "viewTestLog": "test_result.log",
}


class SessionError(Exception):
    pass


class PairSession:
    """Runs the loop in the background and answers observer messages."""

    def __init__(
        self,
        config: RunConfig,
        generator_factory: GeneratorFactory | None = None,
        runner: Any = None,
        channel: MessageChannel | None = None,
        log_file: Path | None = None,
        preflight: bool = False,
    ):
        self.config = config
        self.channel = channel or MessageChannel()
        self.state = CycleState()
        self.generator_factory = generator_factory or router_factory(config)
        self.runner = runner or ProjectRunner.for_config(config)
        self.log_file = log_file or config.work_path / LOG_FILE_NAME
        self.preflight = preflight

        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="ai-pair"
        )
        self._lock = threading.Lock()
        self._future: concurrent.futures.Future | None = None
        self._orchestrator: CycleOrchestrator | None = None
        self._log_position = 0
        self._last_state: dict[str, Any] | None = None

        self.channel.subscribe(self._remember_state)
        self.channel.on("startAIPair", lambda m: self.start())
        self.channel.on("startWithHint", lambda m: self.start(hint=m.payload.get("hint")))
        self.channel.on("stopAIPair", lambda m: self.stop())
        self.channel.on("requestState", lambda m: self.publish_state())
        self.channel.on("requestLogs", lambda m: self.publish_logs())
        self.channel.on("openSettings", lambda m: self.publish_config())
        for kind in ARTIFACTS:
            self.channel.on(kind, self._on_view_artifact)
        self.channel.on("viewDiff", self._on_view_diff)

    # -----------------------------------------------------------------------
    # Run control
    # -----------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._future is not None and not self._future.done()

    def start(
        self,
        hint: str | None = None,
        fresh: bool = True,
        preflight: bool | None = None,
    ) -> concurrent.futures.Future:
        """
        Start a run in the background. `hint` is seeded before the first cycle.

        A fresh run starts from an empty state. Otherwise hints and cycle
        history are kept and only the retry budget and escalation are
        re-armed, which is how interactive and watch mode continue.
        """
        with self._lock:
            if self.running:
                logger.warning("[SESSION] A run is already in progress; ignoring start request")
                raise SessionError("A run is already in progress")

            if fresh:
                self.state.reset_state()
            else:
                self.state.generation_cycles = 0
                self.state.escalated = False
                self.state.reset_cycle_state()
            self.state.add_hint(hint)
            self._orchestrator = CycleOrchestrator(
                self.config,
                self.generator_factory,
                builder=self.runner,
                tester=self.runner,
                state=self.state,
                channel=self.channel,
            )
            logger.info(
                f"[SESSION] Starting run{' with hint: ' + hint if hint else ''}"
            )
            self._future = self._executor.submit(
                self._orchestrator.run,
                self.preflight if preflight is None else preflight,
            )
            self._future.add_done_callback(self._on_run_done)
            return self._future

    def stop(self) -> None:
        """Halt the current run at its next cycle boundary."""
        if not self.running or self._orchestrator is None:
            logger.info("[SESSION] No run in progress")
            return
        self._orchestrator.stop()

    def wait(self, timeout: float | None = None) -> RunResult | None:
        """Block until the current run finishes and return its result."""
        if self._future is None:
            return None
        return self._future.result(timeout=timeout)

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "PairSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _on_run_done(self, future: concurrent.futures.Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"[SESSION] Run failed: {error}")
        else:
            logger.info(f"[SESSION] Run finished: {future.result().status}")

    # -----------------------------------------------------------------------
    # Outbound notifications
    # -----------------------------------------------------------------------

    def _remember_state(self, message: Message) -> None:
        if message.kind == "stateUpdate":
            self._last_state = copy.deepcopy(message.payload)

    def publish_state(self) -> None:
        # While a run is in flight, replay the last published snapshot
        # rather than reading the live state from this thread.
        if self.running and self._last_state is not None:
            payload = self._last_state
        else:
            payload = self.state.to_message_payload()
        self.channel.emit("stateUpdate", payload)

    def publish_config(self) -> None:
        self.channel.emit("configUpdate", self.config.public_dict())

    def publish_logs(self) -> list[str]:
        lines = self.read_new_logs()
        logger.debug(f"[SESSION] Found {len(lines)} new log lines")
        if lines:
            self.channel.emit("logUpdate", {"logs": lines})
        return lines

    def read_new_logs(self) -> list[str]:
        """Lines appended to the log file since the last call, without timestamps."""
        if not self.log_file.exists():
            return []

        size = self.log_file.stat().st_size
        if size < self._log_position:
            # Truncated or rotated
            self._log_position = 0

        with open(self.log_file, "rb") as f:
            f.seek(self._log_position)
            content = f.read().decode("utf-8", errors="replace")
            self._log_position = f.tell()

        return [
            _LOG_PREFIX.sub("", line)
            for line in content.splitlines()
            if line.strip()
        ]

    # -----------------------------------------------------------------------
    # Cycle artifacts
    # -----------------------------------------------------------------------

    def cycle_dir(self, cycle_number: int) -> Path:
        return self.config.work_path / f"generationCycle{cycle_number}"

    def read_artifact(self, cycle_number: int, name: str) -> str:
        path = self.cycle_dir(cycle_number) / name
        if not path.is_file():
            raise SessionError(f"Log file not found: {path}")
        return path.read_text(encoding="utf-8", errors="replace")

    def file_diff(self, cycle_number: int, file_path: str) -> str:
        """Unified diff of one file as changed by one cycle."""
        changes = self.cycle_dir(cycle_number) / "changes"
        modified = changes / file_path
        original = Path(f"{modified}.orig")
        if not modified.is_file():
            raise SessionError(f"File not found: {modified}")

        before = original.read_text(encoding="utf-8").splitlines(keepends=True) if original.is_file() else []
        after = modified.read_text(encoding="utf-8").splitlines(keepends=True)
        return "".join(difflib.unified_diff(
            before, after,
            fromfile=f"a/{file_path}",
            tofile=f"b/{file_path} (cycle {cycle_number})",
        ))

    def _on_view_artifact(self, message: Message) -> None:
        cycle_number = int(message.payload.get("cycleNumber", 0))
        name = ARTIFACTS[message.kind]
        if message.kind == "viewGenerationLog" and message.payload.get("logType"):
            name = f"{message.payload['logType']}.log"

        payload: dict[str, Any] = {"cycleNumber": cycle_number, "stage": name.removesuffix(".log")}
        try:
            content = self.read_artifact(cycle_number, name)
        except SessionError as e:
            logger.error(f"[SESSION] {e}")
            payload.update(logs=[], error=str(e))
        else:
            payload["logs"] = content.splitlines()
        self.channel.emit("logUpdate", payload)

    def _on_view_diff(self, message: Message) -> None:
        cycle_number = int(message.payload.get("cycleNumber", 0))
        file_path = str(message.payload.get("filePath", ""))

        payload: dict[str, Any] = {"cycleNumber": cycle_number, "filePath": file_path}
        try:
            diff = self.file_diff(cycle_number, file_path)
        except SessionError as e:
            logger.error(f"[SESSION] {e}")
            payload.update(logs=[], error=str(e))
        else:
            payload.update(diff=diff, logs=diff.splitlines())
        self.channel.emit("logUpdate", payload)
