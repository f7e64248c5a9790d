"""
JWT and DPoP utilities for AT Protocol authentication.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession)
JWTs as specified in RFC 9449, PKCE verifier/challenge pairs (RFC 7636) and
signed client assertions (RFC 7523).
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from jwcrypto import jwk, jwt
from ulid import ULID


def _b64_sha256(value: str) -> str:
    hashed = hashlib.sha256(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret sent with the token request
        - pkce_challenge: The S256 challenge sent with the authorization request

    Security considerations:
        - The verifier uses 64 bytes of entropy, which encodes to 86
          characters and stays inside the 43-128 range of RFC 7636 section 4.1
        - The challenge uses SHA-256 for the code challenge method
    """
    pkce_verifier = secrets.token_urlsafe(64)
    return (pkce_verifier, _b64_sha256(pkce_verifier))


def access_token_hash(access_token: str) -> str:
    """The ``ath`` claim binding a DPoP proof to an access token."""
    return _b64_sha256(access_token)


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for DPoP JWT signing with a unique
    key identifier.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: the private JWK and its public half
        as a dictionary for JWT headers.
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def load_dpop_key(dpop_jwk: Dict[str, Any]) -> jwk.JWK:
    return jwk.JWK(**dpop_jwk)


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key."""
    return {
        "alg": "ES256",
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def normalize_htu(http_uri: str) -> str:
    """Strip query and fragment; the ``htu`` claim excludes both."""
    parts = urlsplit(http_uri)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Server-provided nonce, when one is known
        access_token: Access token to bind with an ``ath`` claim, for
            requests to a resource server

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a signed DPoP proof for a single request.

    Every proof gets a fresh ``jti`` so the server can reject replays.
    """
    header = create_dpop_header(dpop_key.export_public(as_dict=True))
    claims = create_dpop_claims(
        http_method,
        http_uri,
        issued_at=issued_at,
        nonce=nonce,
        access_token=access_token,
    )
    claims["jti"] = secrets.token_urlsafe(32)

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)
    return dpop_jwt.serialize()


def create_client_assertion_jwt(
    signing_key: jwk.JWK,
    signing_key_id: str,
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a ``private_key_jwt`` client assertion for the token endpoint."""
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    assertion = jwt.JWT(
        header={"alg": "ES256", "kid": signing_key_id},
        claims={
            "iss": client_id,
            "sub": client_id,
            "aud": audience,
            "jti": str(ULID()),
            "iat": int(issued_at.timestamp()),
        },
    )
    assertion.make_signed_token(signing_key)
    return assertion.serialize()
