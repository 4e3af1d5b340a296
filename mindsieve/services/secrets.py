"""Secret Manager access."""

import logging
from typing import Optional

from google.cloud import secretmanager

from mindsieve.config import GCPConfig, get_settings
from mindsieve.exceptions import BootstrapError

logger = logging.getLogger(__name__)


class SecretStore:
    """Reads the latest version of named secrets."""

    def __init__(
        self,
        gcp: Optional[GCPConfig] = None,
        client: Optional[secretmanager.SecretManagerServiceAsyncClient] = None,
    ):
        self.gcp = gcp or get_settings().gcp
        self._client = client

    def _ensure_initialized(self):
        """Lazy initialization of the Secret Manager client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceAsyncClient()

    def secret_path(self, name: str) -> str:
        return f"projects/{self.gcp.project_id}/secrets/{name}/versions/latest"

    async def get_secret(self, name: str) -> str:
        """Fetch a secret payload as text.

        Raises:
            BootstrapError: The secret is unreadable or empty
        """
        self._ensure_initialized()
        try:
            response = await self._client.access_secret_version(name=self.secret_path(name))
        except Exception as e:
            logger.error(f"Failed to access secret {name}: {e}")
            raise BootstrapError(f"Failed to access secret {name}.") from e

        payload = response.payload.data.decode("utf-8").strip() if response.payload.data else ""
        if not payload:
            raise BootstrapError(f"Secret {name} has an empty payload.")
        return payload
