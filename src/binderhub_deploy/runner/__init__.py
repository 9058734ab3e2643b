"""Runners that execute built commands against the external CLIs."""

from binderhub_deploy.runner.executor import CommandRunner, RecordingRunner
from binderhub_deploy.runner.subprocess_runner import SubprocessRunner

__all__ = ["CommandRunner", "RecordingRunner", "SubprocessRunner"]
