"""Concrete implementations for credential providers."""

import os
from abc import ABC, abstractmethod

from .exceptions import ConfigurationError


class Auth(ABC):
    """Interface for obtaining the bearer token sent with every request."""

    @abstractmethod
    async def current_token(self) -> str:
        """Returns a valid token, refreshing it first if the provider must."""
        pass


class StaticToken(Auth):
    """A fixed token, e.g. an API key read once at startup."""

    def __init__(self, token: str):
        """Initialize with a token.

        Parameters
        ----------
        token : str
            The bearer token. Non-string values will be converted to strings
            to enforce the Auth interface contract.
        """
        self._token = str(token)

    async def current_token(self) -> str:
        return self._token


class EnvironmentToken(Auth):
    """Reads the token from an environment variable on every request."""

    def __init__(self, var: str = "FORKCHAT_API_TOKEN"):
        self.var = var

    async def current_token(self) -> str:
        token = os.environ.get(self.var)
        if not token:
            raise ConfigurationError(f"Environment variable {self.var} is not set")
        return token
