"""
Sandboxed command execution.

Encoder processes run with no network access, capped CPU time, capped
address space and a wall-clock timeout. The isolation wrapper itself is
configurable (TRANSCODE_SANDBOX_PREFIX) so deployments can pick unshare,
firejail or nothing at all.
"""
from dataclasses import dataclass
from typing import Optional
import resource
import subprocess


@dataclass
class SandboxResult:
    """Outcome of one sandboxed command"""
    exit_code: Optional[int]
    output: str
    timed_out: bool = False

    @property
    def succeeded(self):
        return self.exit_code == 0 and not self.timed_out


class SandboxRunner:
    """Runs argv lists under the configured isolation prefix and limits"""

    def __init__(self, settings):
        self.settings = settings

    def command(self, argv):
        """Full argv including the isolation prefix"""
        return list(self.settings.sandbox_prefix) + [str(arg) for arg in argv]

    def _limit_resources(self):
        cpu = self.settings.cpu_time_limit
        resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))
        memory = self.settings.memory_limit_bytes
        if memory > 0:
            resource.setrlimit(resource.RLIMIT_AS, (memory, memory))

    def run(self, argv, cwd=None, logger=None):
        """
        Run a command inside the sandbox.

        stderr is merged into stdout so encoder diagnostics end up in one
        stream for logging and error reports.

        Args:
            argv: Command and arguments
            cwd: Working directory, usually the attempt's temp dir
            logger: Optional callable(str) for logging

        Returns:
            SandboxResult
        """
        def log(message):
            if logger:
                logger(message)

        cmd = self.command(argv)
        log(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace',
                timeout=self.settings.time_limit,
                preexec_fn=self._limit_resources,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.output or ''
            if isinstance(output, bytes):
                output = output.decode('utf-8', errors='replace')
            log(f"Command timed out after {self.settings.time_limit}s")
            return SandboxResult(exit_code=None, output=output, timed_out=True)
        except OSError as exc:
            log(f"Command failed to start: {exc}")
            return SandboxResult(exit_code=None, output=str(exc))

        log(result.stdout or '')
        return SandboxResult(exit_code=result.returncode, output=result.stdout or '')
