"""shipctl - deploy, verify, roll back and back up a single-host service."""

__version__ = "0.1.0"
