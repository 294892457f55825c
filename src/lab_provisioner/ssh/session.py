"""SSH session management built on Paramiko."""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Callable, Optional

import paramiko

from .credentials import SSHCredentials


class SSHConnectionError(RuntimeError):
    """Raised when an SSH connection cannot be established."""

    pass


@dataclass
class SSHCommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out


class SSHSession:
    """High-level wrapper around paramiko.SSHClient."""

    def __init__(
        self,
        credentials: SSHCredentials,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ) -> None:
        self.credentials = credentials
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def connect(self) -> None:
        if self._client:
            return
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            connect_kwargs = {
                "hostname": self.credentials.host,
                "port": self.credentials.port,
                "username": self.credentials.username,
                "timeout": self.credentials.timeout,
                "look_for_keys": False,
                "allow_agent": False,
            }
            if self.credentials.auth_method == "password":
                connect_kwargs["password"] = self.credentials.password
            else:
                connect_kwargs["key_filename"] = self.credentials.key_path
                if self.credentials.passphrase:
                    connect_kwargs["passphrase"] = self.credentials.passphrase
            client.connect(**connect_kwargs)
        except Exception as exc:
            client.close()
            raise SSHConnectionError(str(exc)) from exc
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run(self, command: str, *, timeout: Optional[float] = None) -> SSHCommandResult:
        """
        Execute a command on the remote server and wait for it to finish.

        Args:
            command: The command to execute
            timeout: Seconds without the command completing before giving up

        Returns:
            SSHCommandResult; `timed_out` is set when the deadline passed.
            The remote process is not killed on timeout, only abandoned.
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        _stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        channel = stdout.channel
        if timeout is not None:
            channel.settimeout(float(timeout))

        try:
            # 先读完输出再取退出码，避免大输出时缓冲区阻塞
            stdout_text = stdout.read().decode("utf-8", errors="replace")
            stderr_text = stderr.read().decode("utf-8", errors="replace")
            exit_status = channel.recv_exit_status()
        except socket.timeout:
            channel.close()
            return SSHCommandResult(
                command=command,
                stdout="",
                stderr=f"TIMEOUT: Command did not complete within {timeout} seconds.",
                exit_status=-1,
                timed_out=True,
            )

        return SSHCommandResult(
            command=command,
            stdout=stdout_text.strip(),
            stderr=stderr_text.strip(),
            exit_status=exit_status,
        )
