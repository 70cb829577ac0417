"""Authentication gate for the MCP endpoint."""

from __future__ import annotations

import base64
import binascii
import secrets


class GatewayAuth:
    """HTTP Basic Auth in front of ``/mcp``.

    Active only when both a username and a password are configured; otherwise
    every request is let through.
    """

    def __init__(self, username: str | None, password: str | None) -> None:
        self.username = username
        self.password = password

    @property
    def enabled(self) -> bool:
        return bool(self.username) and bool(self.password)

    @staticmethod
    def parse_basic(authorization: str | None) -> tuple[str, str] | None:
        """Decode an ``Authorization: Basic ...`` header into (user, password)."""
        if not authorization:
            return None
        scheme, _, encoded = authorization.partition(" ")
        if scheme.lower() != "basic" or not encoded.strip():
            return None
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, sep, password = decoded.partition(":")
        if not sep:
            return None
        return username, password

    def validate(self, authorization: str | None) -> bool:
        """Validate the Authorization header based on configured mode."""
        if not self.enabled:
            return True

        credentials = self.parse_basic(authorization)
        if credentials is None:
            return False
        username, password = credentials
        user_ok = secrets.compare_digest(username.encode(), str(self.username).encode())
        pass_ok = secrets.compare_digest(password.encode(), str(self.password).encode())
        return user_ok and pass_ok
