import logging
from dataclasses import dataclass
from typing import Optional

from lib.blocking import run_blocking

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.email or self.id


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Resolves Supabase access tokens to users"""

    def __init__(self, supabase_client, timeout: float = 30.0):
        self.supabase = supabase_client
        self.timeout = timeout

    async def get_user(self, access_token: str) -> Optional[AuthenticatedUser]:
        try:
            response = await run_blocking(self.supabase.auth.get_user, access_token, timeout=self.timeout)
        except Exception as e:
            logger.warning(f"Session validation failed: {str(e)}")
            return None

        user = getattr(response, 'user', None)
        if user is None:
            return None
        return AuthenticatedUser(id=str(user.id), email=getattr(user, 'email', None))
