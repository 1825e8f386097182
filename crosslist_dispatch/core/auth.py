from dataclasses import dataclass
from datetime import datetime


class UnauthenticatedError(Exception):
    """Raised when an agent identity cannot be validated."""


class AuthUnavailableError(Exception):
    """Raised when the identity provider cannot be reached."""


@dataclass(slots=True)
class AgentPrincipal:
    user_id: str
    authenticated_at: datetime
    token_verified: bool = False
