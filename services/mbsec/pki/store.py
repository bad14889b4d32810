"""File-backed credential store.

Each alias owns three files in one directory:

    {alias}.pfx   password-less PKCS#12 archive (source of truth)
    {alias}.key   PEM PKCS#8 private key, mode 0600 (operator inspection)
    {alias}.crt   PEM certificate (operator inspection)

The archive is written last and atomically, so its presence marks a
complete credential. Concurrent first-time calls for the same alias from
separate processes are not coordinated; bootstrap runs once, single-threaded.
"""

import os
import tempfile
from collections.abc import Callable
from pathlib import Path

from mbsec.exceptions import CredentialDecodeError, CredentialStoreError
from mbsec.logging_config import get_logger
from mbsec.pki.codec import (
    get_certificate_fingerprint,
    load_archive,
    serialize_archive,
    serialize_certificate,
    serialize_private_key,
)
from mbsec.pki.credential import Credential

logger = get_logger(__name__)

ARCHIVE_SUFFIX = ".pfx"
KEY_SUFFIX = ".key"
CERT_SUFFIX = ".crt"


def load_credential(path: Path, alias: str) -> Credential:
    """Load an existing archive. A corrupt archive is an error, never a cache miss."""
    try:
        return load_archive(path.read_bytes(), alias=alias)
    except CredentialDecodeError as e:
        raise CredentialStoreError(f"Corrupt credential archive: {e}", alias=alias, path=path) from e
    except OSError as e:
        raise CredentialStoreError(
            f"Cannot read credential archive: {e}", alias=alias, path=path
        ) from e


def ensure_credential(
    path: Path,
    alias: str,
    factory: Callable[[], Credential],
) -> Credential:
    """Load the credential at ``path`` if present, otherwise create and persist it.

    Idempotent: once the archive exists, later calls return the stored
    credential unchanged and never invoke ``factory``.
    """
    path = Path(path)

    if path.exists():
        credential = load_credential(path, alias)
        logger.info(
            "Loaded credential from disk",
            alias=alias,
            path=str(path),
            fingerprint=get_certificate_fingerprint(credential.certificate)[:16],
        )
        return credential

    logger.info("No existing credential found, creating", alias=alias, path=str(path))

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CredentialStoreError(
            f"Cannot create store directory: {e}", alias=alias, path=path
        ) from e

    credential = factory()

    try:
        _write_companions(path.parent, alias, credential)
        _write_atomic(path, serialize_archive(alias, credential), mode=0o600)
    except OSError as e:
        raise CredentialStoreError(f"Cannot persist credential: {e}", alias=alias, path=path) from e

    logger.info(
        "Persisted new credential",
        alias=alias,
        path=str(path),
        serial=credential.serial_number,
        fingerprint=get_certificate_fingerprint(credential.certificate)[:16],
    )

    return credential


def _write_companions(directory: Path, alias: str, credential: Credential) -> None:
    _write_atomic(
        directory / f"{alias}{KEY_SUFFIX}",
        serialize_private_key(credential.private_key),
        mode=0o600,
    )
    _write_atomic(
        directory / f"{alias}{CERT_SUFFIX}",
        serialize_certificate(credential.certificate),
        mode=0o644,
    )


def _write_atomic(path: Path, data: bytes, mode: int) -> None:
    """Write via a temp file in the same directory, then rename into place."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.chmod(mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class CredentialStore:
    """A directory of credentials addressed by alias."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, alias: str) -> Path:
        return self._root / f"{alias}{ARCHIVE_SUFFIX}"

    def exists(self, alias: str) -> bool:
        return self.path_for(alias).exists()

    def load(self, alias: str) -> Credential:
        return load_credential(self.path_for(alias), alias)

    def ensure(self, alias: str, factory: Callable[[], Credential]) -> Credential:
        return ensure_credential(self.path_for(alias), alias, factory)
