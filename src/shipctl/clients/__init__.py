"""Clients for the registry API and the remote execution channel."""

from shipctl.clients.registry import RegistryClient, RegistryTag
from shipctl.clients.remote import CommandResult, Executor, SSHExecutor

__all__ = ["RegistryClient", "RegistryTag", "CommandResult", "Executor", "SSHExecutor"]
