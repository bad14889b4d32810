"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

from mbsec.pki.ca import LeafKind, create_root_credential, issue_leaf_credential
from mbsec.pki.credential import Credential
from mbsec.services.authz_service import ROLE_READ_ONLY, ROLE_READ_WRITE

# RSA key generation dominates test time; credentials that tests only read
# are created once per session.


@pytest.fixture(scope="session")
def ca_credential() -> Credential:
    """Create a CA credential shared by the session."""
    return create_root_credential()


@pytest.fixture(scope="session")
def server_credential(ca_credential: Credential) -> Credential:
    """Create a server credential signed by the session CA."""
    return issue_leaf_credential(ca_credential, LeafKind.SERVER)


@pytest.fixture(scope="session")
def read_only_credential(ca_credential: Credential) -> Credential:
    """Create a ReadOnly client credential."""
    return issue_leaf_credential(ca_credential, LeafKind.CLIENT, ROLE_READ_ONLY)


@pytest.fixture(scope="session")
def read_write_credential(ca_credential: Credential) -> Credential:
    """Create a ReadWrite client credential."""
    return issue_leaf_credential(ca_credential, LeafKind.CLIENT, ROLE_READ_WRITE)


@pytest.fixture(scope="session")
def roleless_credential(ca_credential: Credential) -> Credential:
    """Create a client credential without a role extension."""
    return issue_leaf_credential(ca_credential, LeafKind.CLIENT, None)


@pytest.fixture
def pki_dir(tmp_path: Path) -> Path:
    """Return a not-yet-existing PKI directory."""
    return tmp_path / "pki"
