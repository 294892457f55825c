"""Local and Vagrant-backed execution for hosts reachable from the control machine."""

from .session import LocalCommandResult, LocalSession, VagrantCommunicationError, VagrantSession

__all__ = ["LocalCommandResult", "LocalSession", "VagrantCommunicationError", "VagrantSession"]
