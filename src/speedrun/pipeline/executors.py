"""
Opaque stage executors and the launch/join primitives.

Every executor is started with :meth:`Executor.launch`, which returns a
:class:`TaskHandle` immediately. Blocking stages are simply launched and joined
back to back; the one background stage is launched, left running, and joined
later by the sequencer.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping, Optional, Protocol, Sequence

from .workspace import Workspace

if TYPE_CHECKING:  # pragma: no cover
    from .stages import Stage

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


class StageFailure(RuntimeError):
    """A stage executor terminated with a non-zero status."""

    def __init__(self, stage: str, returncode: int) -> None:
        super().__init__(f"stage '{stage}' failed with exit status {returncode}")
        self.stage = stage
        self.returncode = returncode

    @property
    def exit_code(self) -> int:
        # Killed by signal N reports -N; shells report 128+N.
        if self.returncode < 0:
            return 128 - self.returncode
        return self.returncode


@dataclass
class RunContext:
    """Everything an executor needs from the orchestrator, passed explicitly."""

    workspace: Workspace
    cwd: Path
    dry_run: bool = False
    environ: Optional[Mapping[str, str]] = None

    def child_env(self) -> dict[str, str]:
        return self.workspace.child_env(self.environ)


class TaskHandle(Protocol):
    def wait(self) -> int:
        ...

    def done(self) -> bool:
        ...

    def cancel(self) -> bool:
        ...


class CompletedHandle:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode

    def wait(self) -> int:
        return self.returncode

    def done(self) -> bool:
        return True

    def cancel(self) -> bool:
        return False


class ProcessHandle:
    def __init__(self, proc: subprocess.Popen) -> None:
        self.proc = proc

    @property
    def pid(self) -> int:
        return self.proc.pid

    def wait(self) -> int:
        return self.proc.wait()

    def done(self) -> bool:
        return self.proc.poll() is not None

    def cancel(self) -> bool:
        if self.done():
            return False
        logger.warning("Terminating background process %s", self.proc.pid)
        self.proc.terminate()
        try:
            self.proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            self.proc.wait()
        return True


class FutureHandle:
    def __init__(self, future: "Future[Optional[int]]") -> None:
        self.future = future

    def wait(self) -> int:
        # Exceptions raised by the callable propagate here.
        result = self.future.result()
        return 0 if result is None else int(result)

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        return self.future.cancel()


class Executor(Protocol):
    def launch(self, context: RunContext) -> TaskHandle:
        ...

    def describe(self) -> str:
        ...


class CommandExecutor:
    """Run one external command (argv list, or a shell string when ``shell=True``)."""

    def __init__(self, command: Sequence[str] | str, *, shell: bool = False) -> None:
        if shell and not isinstance(command, str):
            raise TypeError("shell commands must be given as a single string")
        self.command = command if isinstance(command, str) else list(command)
        self.shell = shell

    def describe(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return shlex.join(self.command)

    def launch(self, context: RunContext) -> TaskHandle:
        if context.dry_run:
            logger.info("[dry-run] (cd %s && %s)", context.cwd, self.describe())
            return CompletedHandle(0)
        logger.debug("exec: %s", self.describe())
        try:
            proc = subprocess.Popen(
                self.command,
                shell=self.shell,
                cwd=str(context.cwd),
                env=context.child_env(),
            )
        except FileNotFoundError as exc:
            logger.error("Command not found: %s (%s)", self.describe(), exc)
            return CompletedHandle(COMMAND_NOT_FOUND)
        return ProcessHandle(proc)

    def __repr__(self) -> str:
        return f"CommandExecutor({self.describe()!r})"


class CallableExecutor:
    """Run an in-process callable on a worker thread; it returns an exit status or ``None``."""

    def __init__(self, func: Callable[[RunContext], Optional[int]], description: str) -> None:
        self.func = func
        self.description = description

    def describe(self) -> str:
        return self.description

    def launch(self, context: RunContext) -> TaskHandle:
        if context.dry_run:
            logger.info("[dry-run] %s", self.description)
            return CompletedHandle(0)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stage")
        try:
            future = pool.submit(self.func, context)
        finally:
            pool.shutdown(wait=False)
        return FutureHandle(future)

    def __repr__(self) -> str:
        return f"CallableExecutor({self.description!r})"


class SequenceExecutor:
    """Run several executors one after another, stopping at the first failure."""

    def __init__(self, *executors: Executor) -> None:
        if not executors:
            raise ValueError("SequenceExecutor needs at least one executor")
        self.executors = list(executors)

    def describe(self) -> str:
        return " && ".join(executor.describe() for executor in self.executors)

    def _run_all(self, context: RunContext) -> int:
        for executor in self.executors:
            code = executor.launch(context).wait()
            if code != 0:
                return code
        return 0

    def launch(self, context: RunContext) -> TaskHandle:
        return CallableExecutor(self._run_all, self.describe()).launch(context)

    def __repr__(self) -> str:
        return f"SequenceExecutor({self.describe()!r})"


def launch_async(stage: "Stage", context: RunContext) -> TaskHandle:
    """Start ``stage`` without waiting for it."""
    if stage.executor is None:
        raise ValueError(f"stage '{stage.name}' has no executor to launch")
    logger.info("Launching %s: %s", stage.name, stage.executor.describe())
    return stage.executor.launch(context)


def join(handle: TaskHandle, stage_name: str) -> int:
    """Block until ``handle`` finishes; a non-zero status raises :class:`StageFailure`."""
    code = handle.wait()
    if code != 0:
        raise StageFailure(stage_name, code)
    return code


__all__ = [
    "COMMAND_NOT_FOUND",
    "CallableExecutor",
    "CommandExecutor",
    "CompletedHandle",
    "Executor",
    "FutureHandle",
    "ProcessHandle",
    "RunContext",
    "SequenceExecutor",
    "StageFailure",
    "TaskHandle",
    "join",
    "launch_async",
]
