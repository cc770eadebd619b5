"""Bearer-token authentication for the local API."""

import os
import secrets
from pathlib import Path
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

TOKEN_ENV_VAR = "CONTEXT_KEEPER_API_TOKEN"


class APIAuth:
    """Holds the API token, read from the environment or a token file."""

    def __init__(self, token_file: Optional[Path] = None):
        """
        Initialize API auth.

        Args:
            token_file: Path to token file (default: ~/.config/context-keeper/api_token)
        """
        if token_file is None:
            token_file = Path.home() / ".config" / "context-keeper" / "api_token"
        self.token_file = token_file
        self._token: Optional[str] = None

    def get_token(self) -> str:
        """Current token: env var, then token file, else a freshly generated one."""
        if self._token:
            return self._token

        token = os.getenv(TOKEN_ENV_VAR)
        if not token and self.token_file.exists():
            token = self.token_file.read_text().strip()
        if not token:
            token = secrets.token_urlsafe(32)
            self.token_file.parent.mkdir(parents=True, exist_ok=True)
            self.token_file.write_text(token)

        self._token = token
        return token

    def verify_token(self, token: str) -> bool:
        return secrets.compare_digest(token, self.get_token())


_auth = APIAuth()

security = HTTPBearer()


def get_auth() -> APIAuth:
    """Get the global auth instance."""
    return _auth


def verify_token(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """
    Verify bearer token from request.

    Raises:
        HTTPException: 401 if token is invalid or missing
    """
    token = credentials.credentials
    if not get_auth().verify_token(token):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token
