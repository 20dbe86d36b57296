"""Core utilities and shared components for shipctl."""

# Note: Import context lazily to avoid circular imports
# Use: from shipctl.core.context import ShipCtlContext, pass_context
from shipctl.core.exceptions import (
    ShipCtlError,
    ConfigError,
    ConnectivityError,
    ExternalToolError,
    VerificationTimeoutError,
    NoRollbackCandidateError,
    NotFoundError,
    ConfirmationDeclined,
    BackupError,
)
from shipctl.core.output import OutputFormatter, console

__all__ = [
    "ShipCtlError",
    "ConfigError",
    "ConnectivityError",
    "ExternalToolError",
    "VerificationTimeoutError",
    "NoRollbackCandidateError",
    "NotFoundError",
    "ConfirmationDeclined",
    "BackupError",
    "OutputFormatter",
    "console",
]
