"""Local command execution sessions.

`LocalSession` runs commands on the control host itself. `VagrantSession`
builds on it to reach lab VMs through `vagrant winrm` / `vagrant ssh`, the
way hand-written lab bring-up scripts usually do.
"""

from __future__ import annotations

import base64
import os
import platform
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Union

EXIT_MARKER = "__LAB_PROVISIONER_EXIT__"
_EXIT_LINE = re.compile(rf"^{EXIT_MARKER}=(-?\d+)\s*$", re.MULTILINE)


@dataclass
class LocalCommandResult:
    """Result of executing a local command."""
    command: str
    stdout: str
    stderr: str
    exit_status: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out


class LocalSession:
    """
    Local command execution session.

    Provides the same interface as SSHSession but executes commands locally.
    """

    def __init__(self, working_dir: Optional[str] = None) -> None:
        """
        Initialize local session.

        Args:
            working_dir: Working directory for commands. Defaults to home directory.
        """
        self.working_dir = working_dir or os.path.expanduser("~")
        self.is_windows = platform.system() == "Windows"
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """No-op for local session (for API compatibility with SSHSession)."""
        self._connected = True

    def close(self) -> None:
        """No-op for local session (for API compatibility with SSHSession)."""
        self._connected = False

    def __enter__(self) -> "LocalSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run(self, command: str, *, timeout: Optional[float] = None) -> LocalCommandResult:
        """
        Execute a command locally and wait for it to finish.

        Args:
            command: The command to execute
            timeout: Total timeout in seconds (None waits indefinitely)

        Returns:
            LocalCommandResult with stdout, stderr, and exit status
        """
        args = self._build_args(command)
        try:
            result = subprocess.run(
                args,
                shell=isinstance(args, str),
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.working_dir,
            )
        except subprocess.TimeoutExpired as exc:
            return LocalCommandResult(
                command=command,
                stdout=_decode(exc.stdout),
                stderr=f"TIMEOUT: Command did not complete within {timeout} seconds.",
                exit_status=-1,
                timed_out=True,
            )

        return LocalCommandResult(
            command=command,
            stdout=(result.stdout or "").strip(),
            stderr=(result.stderr or "").strip(),
            exit_status=result.returncode,
        )

    def _build_args(self, command: str) -> Union[str, List[str]]:
        if self.is_windows:
            return ["powershell", "-NoProfile", "-Command", command]
        return command


class VagrantCommunicationError(ConnectionError):
    """vagrant could not reach the VM, so there is no remote exit status."""


class VagrantSession(LocalSession):
    """
    Runs commands inside a Vagrant-managed VM from the Vagrant directory.

    `vagrant winrm` / `vagrant ssh` exit non-zero both when the remote command
    fails and when the VM cannot be reached (halted, rebooting, WinRM not up
    yet). The remote command is therefore wrapped so the guest prints its own
    exit status after a marker; output without the marker means vagrant never
    got a command through, and raises VagrantCommunicationError.
    """

    def __init__(
        self,
        machine: str,
        vagrant_dir: Optional[str] = None,
        communicator: str = "winrm",
    ) -> None:
        super().__init__(working_dir=vagrant_dir or os.getcwd())
        if communicator not in ("winrm", "ssh"):
            raise ValueError(f"Unsupported Vagrant communicator: {communicator}")
        self.machine = machine
        self.communicator = communicator

    def run(self, command: str, *, timeout: Optional[float] = None) -> LocalCommandResult:
        result = super().run(command, timeout=timeout)
        if result.timed_out:
            return result

        codes = _EXIT_LINE.findall(result.stdout)
        if not codes:
            detail = result.stderr or result.stdout or f"vagrant exited with {result.exit_status}"
            raise VagrantCommunicationError(
                f"vagrant {self.communicator} {self.machine} did not run the command: {detail[-500:]}"
            )
        return LocalCommandResult(
            command=command,
            stdout=_EXIT_LINE.sub("", result.stdout).strip(),
            stderr=result.stderr,
            exit_status=int(codes[-1]),
        )

    def _build_args(self, command: str) -> List[str]:
        # vagrant winrm <vm> -c "<powershell>" / vagrant ssh <vm> -c "<shell>"
        return ["vagrant", self.communicator, self.machine, "-c", self._wrap(command)]

    def _wrap(self, command: str) -> str:
        if self.communicator == "winrm":
            # 子进程执行，`exit N` 不会吞掉标记行
            encoded = base64.b64encode(command.encode("utf-16-le")).decode("ascii")
            return (
                f"powershell.exe -NoProfile -NonInteractive -EncodedCommand {encoded}; "
                f"Write-Output \"{EXIT_MARKER}=$LASTEXITCODE\""
            )
        return f"( {command}\n)\necho \"{EXIT_MARKER}=$?\""


def _decode(data: Union[bytes, str, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace").strip()
    return data.strip()
