"""Base class for HTTP clients."""

import logging
from typing import Dict, Optional

import httpx

from ..application.exceptions import ConfigurationError


class BaseClient:
    """A base client that handles an HTTP client and optional token."""

    def __init__(
        self,
        client: httpx.Client,
        timeout: float,
        token: Optional[str] = None,
    ):
        """
        Initializes the base client.

        Args:
            client: An instance of httpx.Client.
            timeout: Per-request timeout in seconds.
            token: An optional bearer token for private package mirrors.

        Raises:
            ConfigurationError: If the token appears to be a placeholder or
                                the timeout is not positive.
        """

        if token and "YOUR_" in token.upper():
            raise ConfigurationError(
                f"Authentication token for {self.__class__.__name__} is a "
                f"placeholder. Please check your config files."
            )
        if timeout <= 0:
            raise ConfigurationError(
                f"Timeout for {self.__class__.__name__} must be positive",
                timeout=timeout,
            )

        self.client = client
        self.timeout = timeout
        self.token = token
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}
