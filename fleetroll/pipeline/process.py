"""Execution of external build commands with timeout enforcement."""

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from ..core.errors import ProcessError, ProcessTimeoutError
from ..core.log import get_logger, log_event

logger = get_logger(__name__)


@dataclass
class ProcessResult:
    """Result of process execution."""

    returncode: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessExecutor:
    """Executes one-shot commands with timeout enforcement."""

    def run(
        self,
        command: List[str],
        timeout: float,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        """Execute ``command`` and capture its output.

        On timeout the whole process tree is killed, since image builders
        commonly fork helpers that would otherwise outlive the command.

        Raises:
            ProcessTimeoutError: The command ran longer than ``timeout``
            ProcessError: The command could not be started
        """
        if not command:
            raise ProcessError("Empty command")
        start_time = time.monotonic()
        log_event(
            logger, "process", f"Executing {' '.join(command)}", command=command, timeout=timeout
        )
        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            raise ProcessError(f"Failed to execute command {command[0]}: {e}") from e

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            duration = time.monotonic() - start_time
            logger.warning("Command %s timed out after %.1fs", command[0], duration)
            kill_process_tree(process.pid)
            process.communicate()
            raise ProcessTimeoutError(
                f"Command {command[0]} timed out after {timeout}s",
                timeout=timeout,
                details={"command": command, "duration": duration},
            ) from e

        duration = time.monotonic() - start_time
        if process.returncode != 0:
            logger.warning(
                "Command %s exited with %d after %.1fs",
                command[0],
                process.returncode,
                duration,
            )
        return ProcessResult(
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=duration,
        )


def kill_process_tree(root_pid: int, timeout: float = 5.0) -> bool:
    """Kill a process and all of its descendants.

    Returns:
        True if every process in the tree is gone
    """
    try:
        root = psutil.Process(root_pid)
        procs = root.children(recursive=True) + [root]
    except psutil.NoSuchProcess:
        return True

    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.error(
            "Processes still alive after killing tree %d: %s",
            root_pid,
            [proc.pid for proc in alive],
        )
    return not alive
