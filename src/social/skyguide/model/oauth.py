"""OAuth 2.0 records for AT Protocol authentication.

Provides the authorization request state stored between login and callback,
and the per-subject session stored after a successful token exchange.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel


class OAuthRequest(BaseModel):
    """OAuth authorization request state with PKCE and DPoP parameters.

    Stores temporary authorization state during the OAuth flow, keyed by the
    ``state`` value sent to the authorization server. Consumed at most once.
    """

    state: str
    pkce_verifier: str
    scope: str
    issuer: str
    token_endpoint: str
    redirect_uri: str
    dpop_jwk: Dict[str, Any]
    did: Optional[str] = None
    handle: Optional[str] = None
    pds: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class OAuthSession(BaseModel):
    """Active OAuth session with access and refresh tokens.

    Represents an authenticated subject with AT Protocol tokens and the DPoP
    key the tokens are bound to. At most one per DID.
    """

    did: str
    issuer: str
    audience: str
    access_token: str
    refresh_token: str
    scope: str
    token_type: str = "DPoP"
    dpop_jwk: Dict[str, Any]
    handle: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    def is_stale(self, now: datetime, leeway: int = 0) -> bool:
        """True once the access token is within ``leeway`` seconds of expiry."""
        return self.expires_at - timedelta(seconds=leeway) <= now
