"""PKI module: certificate authority, credential codec and store, role extension."""

from .ca import CertificateAuthority, LeafKind, create_root_credential, issue_leaf_credential
from .credential import Credential
from .roles import ROLE_OID, PeerCertificateRoleResolver, RoleResolver, extract_role
from .store import CredentialStore, ensure_credential

__all__ = [
    "ROLE_OID",
    "CertificateAuthority",
    "Credential",
    "CredentialStore",
    "LeafKind",
    "PeerCertificateRoleResolver",
    "RoleResolver",
    "create_root_credential",
    "ensure_credential",
    "extract_role",
    "issue_leaf_credential",
]
