"""
DevRunner Command Gates

BUILD, UNIT and BDD run exactly one allow-listed npm command each inside the
sandbox. Nothing else is ever spawned by the gate runner.
"""

import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from devrunner.errors import CommandNotAllowedError
from devrunner.logging import get_logger
from devrunner.models.domain import GateType
from devrunner.qa.gates.interface import (
    LOGS_STDERR,
    LOGS_STDOUT,
    SNIPPET_LIMIT,
    Gate,
    GateContext,
    GateResult,
)

logger = get_logger(__name__)

INSTALL = "INSTALL"

ALLOWED_GATE_COMMANDS: Dict[str, List[str]] = {
    INSTALL: ["npm", "install", "--no-fund", "--no-audit"],
    GateType.BUILD: ["npm", "run", "build"],
    GateType.UNIT: ["npm", "run", "test"],
    GateType.BDD: ["npx", "vitest", "run", "tests/e2e/steps"],
}

DEFAULT_COMMAND_TIMEOUT = 600


@dataclass
class CommandResult:
    passed: bool
    log: str


CommandExecutor = Callable[[List[str], str], CommandResult]


def command_text(kind: str) -> str:
    return " ".join(ALLOWED_GATE_COMMANDS[kind])


def is_allowed_command(command: Sequence[str]) -> bool:
    """Exact argv match against the allow-list."""
    return any(list(command) == allowed for allowed in ALLOWED_GATE_COMMANDS.values())


def run_allowed_command(
    command: List[str],
    cwd: str,
    *,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> CommandResult:
    """
    Spawn an allow-listed command and capture its merged output.

    Raises CommandNotAllowedError before spawning for anything else.
    A timeout is reported as a failed run rather than raised.
    """
    if not is_allowed_command(command):
        raise CommandNotAllowedError(list(command))

    try:
        proc = subprocess.run(
            command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        output = exc.output or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        logger.warning(
            "gate_command_timeout",
            extra={"command": " ".join(command), "cwd": cwd, "timeout": timeout},
        )
        return CommandResult(
            passed=False,
            log=f"{output.strip()}\nerror: command timed out after {timeout}s".strip(),
        )

    return CommandResult(passed=proc.returncode == 0, log=(proc.stdout or "").strip())


def make_command_executor(timeout: int = DEFAULT_COMMAND_TIMEOUT) -> CommandExecutor:
    def _execute(command: List[str], cwd: str) -> CommandResult:
        return run_allowed_command(command, cwd, timeout=timeout)

    return _execute


class CommandGate(Gate):
    """Gate that runs one allow-listed command."""

    def __init__(self, gate_type: str, executor: Optional[CommandExecutor] = None) -> None:
        if gate_type not in GateType.COMMAND_GATES:
            raise ValueError(f"Not a command gate: {gate_type}")
        self._gate_type = gate_type
        self.executor = executor or make_command_executor()

    @property
    def gate_type(self) -> str:
        return self._gate_type

    @property
    def command(self) -> List[str]:
        return ALLOWED_GATE_COMMANDS[self._gate_type]

    def run(self, context: GateContext) -> GateResult:
        start = time.monotonic()
        result = self.executor(self.command, context.workspace_root)
        duration_ms = int((time.monotonic() - start) * 1000)
        return GateResult(
            gate_type=self.gate_type,
            passed=result.passed,
            duration_ms=duration_ms,
            logs_ref=LOGS_STDOUT if result.passed else LOGS_STDERR,
            report={
                "mode": "executed",
                "command": command_text(self._gate_type),
                "snippet": result.log[-SNIPPET_LIMIT:],
            },
        )
