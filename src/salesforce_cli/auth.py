import logging
import threading
from dataclasses import dataclass

import requests

from .exceptions import AuthError

DEFAULT_LOGIN_URL = "https://login.salesforce.com"


@dataclass
class SalesforceCredentials:
    username: str
    password: str
    security_token: str
    client_id: str
    client_secret: str

    def missing_fields(self) -> list[str]:
        # The security token is empty for logins from trusted IP ranges
        return [name for name, value in vars(self).items() if not value and name != "security_token"]


class SalesforceAuthenticator:
    """
    Manages the lifecycle of the Salesforce OAuth access token.

    The token is obtained with the username-password flow on first use and replaced
    in place by refresh(). Login is serialized so that several threads sharing one
    authenticator trigger a single token request.
    """

    def __init__(
        self,
        credentials: SalesforceCredentials,
        login_url: str = DEFAULT_LOGIN_URL,
        session: requests.Session | None = None,
        timeout: float = 60,
    ):
        self.credentials = credentials
        self.login_url = login_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._authorization: str | None = None
        self._instance_url: str | None = None

    @property
    def instance_url(self) -> str:
        self.authorization_header()
        return self._instance_url

    def authorization_header(self) -> str:
        """Return the Authorization header value, logging in first if no token is held"""
        authorization = self._authorization
        if authorization is None:
            with self._lock:
                if self._authorization is None:
                    self._login()
                authorization = self._authorization
        return authorization

    def refresh(self, rejected_header: str | None = None) -> str:
        """
        Obtain a new token after the current one was rejected.

        When another thread already replaced the rejected token, the new one is
        returned without a second login.
        """
        with self._lock:
            current = self._authorization
            if rejected_header is None or current is None or current == rejected_header:
                self.logger.info("Refreshing Salesforce access token")
                self._login()
            return self._authorization

    def _login(self):
        missing = self.credentials.missing_fields()
        if missing:
            raise AuthError(f"Missing Salesforce credentials: {', '.join(missing)}")

        data = {
            "grant_type": "password",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            "username": self.credentials.username,
            "password": self.credentials.password + (self.credentials.security_token or ""),
        }
        token_url = f"{self.login_url}/services/oauth2/token"
        try:
            response = self.session.post(
                token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"Salesforce login failed: {str(e)}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200 or not body.get("access_token"):
            message = body.get("error_description") or body.get("error") or f"HTTP error {response.status_code}"
            raise AuthError(f"Salesforce login failed: {message}", status_code=response.status_code)
        if not body.get("instance_url"):
            raise AuthError("Salesforce login response did not contain an instance URL")

        token_type = body.get("token_type") or "Bearer"
        self._instance_url = body["instance_url"].rstrip("/")
        self._authorization = f"{token_type} {body['access_token']}"
        self.logger.info(f"Successfully logged in to Salesforce instance: {self._instance_url}")
