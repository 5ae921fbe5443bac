"""
Authenticators
--------------
The writer only needs a bearer token. ``GoogleAuthenticator`` obtains one
with google-auth from a service account key, the Compute Engine metadata
server or Application Default Credentials.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import google.auth
import google.auth.transport.requests
from google.auth import compute_engine
from google.oauth2 import service_account

from bq_ingest.errors import ConfigurationError

logger = logging.getLogger(__name__)

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"
AUTH_METHODS = ("json_key", "compute_engine", "application_default")


class Authenticator(ABC):
    """Source of bearer tokens for the BigQuery API."""

    @abstractmethod
    def get_credential(self) -> str:
        """Return a valid access token, refreshing it if needed."""
        pass

    def invalidate(self) -> None:
        """Forget any cached credential so the next call re-authenticates."""
        pass


class StaticTokenAuthenticator(Authenticator):
    """Authenticator for an already issued access token."""

    def __init__(self, token: str):
        self.token = token

    def get_credential(self) -> str:
        return self.token


class GoogleAuthenticator(Authenticator):
    """
    google-auth backed authenticator.

    Args:
        auth_method: ``json_key``, ``compute_engine`` or ``application_default``.
        json_key: Path to a service account key file, or the key JSON itself.
        scopes: OAuth scopes requested for the credential.
    """

    def __init__(
        self,
        auth_method: str = "application_default",
        json_key: Optional[str] = None,
        scopes: Sequence[str] = (BIGQUERY_SCOPE,),
    ):
        if auth_method not in AUTH_METHODS:
            raise ConfigurationError(f"Unknown auth method: {auth_method}")
        if auth_method == "json_key" and not json_key:
            raise ConfigurationError(
                "'json_key' must be specified if auth_method == 'json_key'"
            )
        self.auth_method = auth_method
        self.json_key = json_key
        self.scopes = list(scopes)
        self._credentials: Optional[Any] = None
        self._lock = threading.Lock()

    def get_credential(self) -> str:
        with self._lock:
            if self._credentials is None:
                self._credentials = self._load_credentials()
            if not self._credentials.valid:
                self._credentials.refresh(google.auth.transport.requests.Request())
                logger.debug(f"Refreshed {self.auth_method} credential")
            return self._credentials.token

    def invalidate(self) -> None:
        with self._lock:
            self._credentials = None

    def _load_credentials(self) -> Any:
        if self.auth_method == "json_key":
            if os.path.exists(self.json_key):
                return service_account.Credentials.from_service_account_file(
                    self.json_key, scopes=self.scopes
                )
            try:
                info = json.loads(self.json_key)
            except ValueError as e:
                raise ConfigurationError(
                    "'json_key' is neither an existing file nor a JSON key"
                ) from e
            return service_account.Credentials.from_service_account_info(
                info, scopes=self.scopes
            )

        if self.auth_method == "compute_engine":
            return compute_engine.Credentials(scopes=self.scopes)

        credentials, _project = google.auth.default(scopes=self.scopes)
        return credentials
