"""SSH transport for Lab Provisioner."""

from .credentials import SSHCredentials
from .session import SSHCommandResult, SSHConnectionError, SSHSession

__all__ = [
    "SSHCredentials",
    "SSHCommandResult",
    "SSHConnectionError",
    "SSHSession",
]
