"""Child-process supervision."""

from bitforge.process.supervisor import CommandRunner, ProcessHandle, probe, run_command

__all__ = ["CommandRunner", "ProcessHandle", "probe", "run_command"]
