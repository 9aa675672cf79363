"""Sources of upstream feed credentials."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod

from .models import UpstreamCredentials

logger = logging.getLogger(__name__)


class CredentialSource(ABC):
    """Where the feed looks up credentials before each connection attempt.

    ``fetch`` may raise on lookup errors; the feed treats that as a setup
    failure and retries later. Returning None means no credentials are stored.
    """

    @abstractmethod
    async def fetch(self) -> UpstreamCredentials | None:
        """Return the current credentials, or None if none are configured."""


class EnvCredentialSource(CredentialSource):
    """Reads ANGEL_CLIENT_CODE, ANGEL_FEED_TOKEN and ANGEL_API_KEY on every fetch."""

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    async def fetch(self) -> UpstreamCredentials | None:
        credentials = UpstreamCredentials(
            client_code=self._environ.get("ANGEL_CLIENT_CODE", "").strip(),
            feed_token=self._environ.get("ANGEL_FEED_TOKEN", "").strip(),
            api_key=self._environ.get("ANGEL_API_KEY", "").strip(),
        )
        if not credentials.is_complete:
            logger.debug("Upstream credentials not set in environment")
            return None
        return credentials
