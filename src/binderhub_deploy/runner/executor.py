"""CommandRunner protocol and built-in RecordingRunner.

The CommandRunner protocol defines the interface the deployment driver
uses to call external tools. Any object with a ``run()`` method
satisfies the protocol — no inheritance required.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from binderhub_deploy.commands import Command
from binderhub_deploy.models import CommandResult


@runtime_checkable
class CommandRunner(Protocol):
    """Protocol for command runners."""

    def run(self, command: Command, timeout: float | None = None) -> CommandResult:
        """Run a command and return its result. Never raises for a non-zero exit."""
        ...


class RecordingRunner:
    """Runner that records commands without executing anything.

    Replies are scripted per command name: each call consumes the next
    entry and the last entry repeats. A reply is either a stdout string or
    a full :class:`CommandResult`. Unscripted commands succeed with empty
    output. Useful for tests and for previewing a deployment.
    """

    def __init__(
        self,
        replies: Mapping[str, Sequence[str | CommandResult]] | None = None,
    ) -> None:
        self._replies = {name: list(items) for name, items in (replies or {}).items()}
        self._counts: dict[str, int] = {}
        self.commands: list[Command] = []

    def run(self, command: Command, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        index = self._counts.get(command.name, 0)
        self._counts[command.name] = index + 1

        scripted = self._replies.get(command.name)
        if not scripted:
            return CommandResult(args=command.args, dry_run=True)

        reply = scripted[min(index, len(scripted) - 1)]
        if isinstance(reply, CommandResult):
            return reply.model_copy(update={"args": command.args})
        return CommandResult(args=command.args, stdout=reply, dry_run=True)

    def count(self, name: str) -> int:
        """Number of times the command named *name* was run."""
        return self._counts.get(name, 0)

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.commands]
