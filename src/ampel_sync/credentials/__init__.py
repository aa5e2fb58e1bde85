"""Credential encryption and the account vault."""

from .cipher import TokenCipher
from .vault import CredentialVault, normalize_instance_url

__all__ = ["CredentialVault", "TokenCipher", "normalize_instance_url"]
