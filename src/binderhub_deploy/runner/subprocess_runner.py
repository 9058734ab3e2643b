"""SubprocessRunner — runs az, kubectl and helm via subprocess.

Output is captured and returned in a :class:`CommandResult`. Commands
marked interactive (``az login``) inherit the terminal instead so the
user can see device-code prompts.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Mapping

from binderhub_deploy.commands import Command
from binderhub_deploy.models import CommandResult

logger = logging.getLogger(__name__)


class SubprocessRunner:
    """Runner that executes commands with ``subprocess.run``.

    A missing executable or an expired timeout is reported as a failed
    result (exit codes 127 and 124), never as an exception.
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        kubeconfig: str | None = None,
    ) -> None:
        self._env = dict(env) if env is not None else None
        self._kubeconfig = kubeconfig

    def run(self, command: Command, timeout: float | None = None) -> CommandResult:
        logger.debug("Running: %s", command.display)
        start = time.monotonic()
        try:
            if command.interactive:
                completed = subprocess.run(
                    command.args,
                    text=True,
                    timeout=timeout,
                    env=self._build_env(),
                )
            else:
                completed = subprocess.run(
                    command.args,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env=self._build_env(),
                )
        except subprocess.TimeoutExpired:
            return CommandResult(
                args=command.args,
                returncode=124,
                stderr=f"Command timed out after {timeout}s: {command.display}",
                duration_ms=(time.monotonic() - start) * 1000,
            )
        except FileNotFoundError:
            return CommandResult(
                args=command.args,
                returncode=127,
                stderr=f"Executable not found: {command.args[0]}",
                duration_ms=(time.monotonic() - start) * 1000,
            )

        elapsed = (time.monotonic() - start) * 1000
        stdout = (completed.stdout or "").strip()
        stderr = (completed.stderr or "").strip()
        if completed.returncode != 0:
            logger.debug("%s exited %d: %s", command.name, completed.returncode, stderr)
        return CommandResult(
            args=command.args,
            returncode=completed.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=elapsed,
        )

    def _build_env(self) -> dict[str, str] | None:
        """Build environment with KUBECONFIG if needed."""
        if self._kubeconfig is None:
            return self._env
        env = dict(self._env) if self._env is not None else os.environ.copy()
        env["KUBECONFIG"] = self._kubeconfig
        return env
