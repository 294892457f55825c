"""Host connections: the opaque handle the dispatcher uses to reach a host."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import paramiko

from ..config import TransportConfig, resolve_credentials
from ..local import LocalSession, VagrantSession
from ..ssh import SSHConnectionError, SSHCredentials, SSHSession

logger = logging.getLogger(__name__)

TRANSPORTS = ("ssh", "local", "vagrant")


class HostUnreachableError(RuntimeError):
    """Raised when a host cannot be reached to run a command."""

    def __init__(self, host_id: str, message: str) -> None:
        super().__init__(f"{host_id}: {message}")
        self.host_id = host_id


class CommandResult(Protocol):
    command: str
    stdout: str
    stderr: str
    exit_status: int
    timed_out: bool


class Session(Protocol):
    def connect(self) -> None: ...

    def close(self) -> None: ...

    def run(self, command: str, *, timeout: Optional[float] = None) -> CommandResult: ...


@dataclass(frozen=True)
class HostSpec:
    """One entry of the plan file's host table."""

    host_id: str
    address: str
    transport: str = "ssh"
    credential: Optional[str] = None
    username: Optional[str] = None
    port: Optional[int] = None
    options: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        if self.transport not in TRANSPORTS:
            raise ValueError(
                f"Host '{self.host_id}' uses unknown transport '{self.transport}' "
                f"(expected one of {', '.join(TRANSPORTS)})"
            )

    @classmethod
    def from_dict(
        cls,
        host_id: str,
        payload: Mapping[str, Any],
        default_transport: str = "ssh",
    ) -> "HostSpec":
        return cls(
            host_id=host_id,
            address=str(payload.get("address") or host_id),
            transport=payload.get("transport") or default_transport,
            credential=payload.get("credential"),
            username=payload.get("username"),
            port=int(payload["port"]) if payload.get("port") is not None else None,
            options=dict(payload.get("options") or {}),
        )


class HostConnection:
    """
    Lazily-opened connection to a single host.

    Created and owned by the driver for the duration of one Run and used by
    that host's lane only. A broken session is dropped so the next command
    reconnects, which is what lets a lane survive a host reboot.
    """

    def __init__(self, spec: HostSpec, session_factory: Callable[[], Session]) -> None:
        self.spec = spec
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    @property
    def host_id(self) -> str:
        return self.spec.host_id

    def __enter__(self) -> "HostConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run(self, command: str, *, timeout: Optional[float] = None) -> CommandResult:
        try:
            if self._session is None:
                session = self._session_factory()
                session.connect()
                self._session = session
            return self._session.run(command, timeout=timeout)
        except (SSHConnectionError, paramiko.SSHException, EOFError, OSError) as exc:
            self._drop_session()
            raise HostUnreachableError(self.host_id, str(exc) or type(exc).__name__) from exc

    def close(self) -> None:
        self._drop_session()

    def _drop_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.close()
        except Exception as exc:  # 关闭失败不影响结果
            logger.debug("Ignoring error while closing %s: %s", self.host_id, exc)


class ConnectionFactory:
    """Builds HostConnections from host specs and transport defaults."""

    def __init__(
        self,
        transport: TransportConfig,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.transport = transport
        self.environ = environ

    def __call__(self, spec: HostSpec) -> HostConnection:
        return HostConnection(spec, lambda: self.build_session(spec))

    def build_session(self, spec: HostSpec) -> Session:
        if spec.transport == "local":
            return LocalSession(working_dir=spec.options.get("working_dir"))

        if spec.transport == "vagrant":
            return VagrantSession(
                machine=spec.options.get("machine") or spec.address,
                vagrant_dir=spec.options.get("vagrant_dir") or self.transport.vagrant_dir,
                communicator=spec.options.get("communicator", "winrm"),
            )

        creds = resolve_credentials(
            spec.credential,
            self.transport,
            username=spec.username,
            environ=self.environ,
        )
        credentials = SSHCredentials(
            host=spec.address,
            username=creds.username or "",
            port=spec.port or self.transport.default_port,
            auth_method=creds.auth_method or ("key" if creds.key_path else "password"),
            password=creds.password,
            key_path=creds.key_path,
            timeout=self.transport.connect_timeout,
        )
        credentials.validate()
        return SSHSession(credentials)
