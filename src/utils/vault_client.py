"""
Vault Credentials for Binlog Flashback

Reads the MySQL login for rollback and locate runs from a HashiCorp Vault
KV v2 mount, so the password never has to appear on the command line.
"""

import logging
import os
from typing import Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

logger = logging.getLogger(__name__)

DEFAULT_SECRET_PATH = "mysql-credentials"
REQUIRED_FIELDS = ("username", "password")


class VaultClient:
    """
    KV v2 reader for the MySQL login.

    The secret holds ``username`` and ``password``; ``host`` and ``port``
    override the connection target when present.
    """

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        verify_ssl: bool = True,
        mount_point: str = "secret"
    ):
        """
        Args:
            vault_url: Vault server URL (defaults to VAULT_ADDR)
            vault_token: Token (defaults to VAULT_TOKEN)
            verify_ssl: Whether to verify TLS certificates
            mount_point: KV v2 mount holding the secret

        Raises:
            ValueError: If the URL or token is missing
            VaultError: If Vault is unreachable or rejects the token
        """
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        self.vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.mount_point = mount_point

        if not self.vault_url:
            raise ValueError("Vault URL must be provided via parameter or VAULT_ADDR environment variable")
        if not self.vault_token:
            raise ValueError("Vault token must be provided via parameter or VAULT_TOKEN environment variable")

        self.client = hvac.Client(url=self.vault_url, token=self.vault_token, verify=verify_ssl)
        try:
            authenticated = self.client.is_authenticated()
        except OSError as e:
            raise VaultError(f"Vault initialization failed: {e}") from e
        if not authenticated:
            raise VaultError(f"Failed to authenticate with Vault at {self.vault_url}")

        logger.info(f"Connected to Vault at {self.vault_url}")

    def get_secret(self, path: str) -> Dict[str, str]:
        """Data of the latest version of a KV v2 secret."""
        logger.debug(f"Reading {self.mount_point}/{path}")
        try:
            response = self.client.secrets.kv.v2.read_secret_version(path=path, mount_point=self.mount_point)
        except OSError as e:
            raise VaultError(f"Secret retrieval failed for {path}: {e}") from e

        data = ((response or {}).get("data") or {}).get("data")
        if not data:
            raise InvalidPath(f"No data found at {self.mount_point}/{path}")
        return data

    def mysql_credentials(self, path: str = DEFAULT_SECRET_PATH) -> Dict[str, str]:
        """
        Read the MySQL login.

        Raises:
            InvalidPath: If nothing is stored at ``path``
            ValueError: If username or password is missing
            VaultError: If Vault cannot be read
        """
        credentials = self.get_secret(path)

        missing = [field for field in REQUIRED_FIELDS if field not in credentials]
        if missing:
            raise ValueError(f"Vault secret {path} is missing: {', '.join(missing)}")

        logger.info(f"Read MySQL credentials for user {credentials['username']} from Vault")
        return credentials

    def close(self):
        self.client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
