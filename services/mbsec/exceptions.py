"""Exceptions raised while building, storing and loading credentials.

Authorization denials are verdicts, not exceptions; nothing here is raised
on the per-request path.
"""

from pathlib import Path


class PKIError(Exception):
    """Base class for credential lifecycle errors."""


class CredentialDecodeError(PKIError):
    """A credential archive could not be decoded."""


class CredentialStoreError(PKIError):
    """A credential could not be persisted or an existing archive is unusable."""

    def __init__(self, message: str, *, alias: str, path: Path):
        super().__init__(f"{message} (alias={alias}, path={path})")
        self.alias = alias
        self.path = path


class BootstrapError(PKIError):
    """A bootstrap step failed in a way that prevents serving traffic."""

    def __init__(self, message: str, *, alias: str, step: str):
        super().__init__(f"{step} failed for '{alias}': {message}")
        self.alias = alias
        self.step = step
