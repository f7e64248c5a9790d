"""
AT Protocol OAuth Handlers

This module implements the web request handlers for signing in with an AT
Protocol account. Credentials never leave the server: the browser only ever
holds a cookie naming the signed-in DID.

OAuth Flow with AT Protocol:
1. The user follows /auth/login, optionally with their handle
2. The application redirects to the authorization server for that handle
3. The user authenticates with their PDS
4. The authorization server redirects back to the registered redirect URI
   (the site root) with a code and state
5. The application exchanges the code for DPoP-bound tokens, stores the
   session and sets the session cookie

The handlers in this module provide the following endpoints:
- GET /auth/login - Start the OAuth flow
- GET / and GET /auth/callback - OAuth callback from the authorization server
- GET /auth/logout - End the session and clear the cookie
- GET /client-metadata.json - OAuth client metadata
- GET /jwks.json - Public keys used for client assertions
- GET /api/me - The current user
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from aiohttp import hdrs, web
from pydantic import BaseModel
import sentry_sdk

from social.skyguide.app.config import Settings, SettingsAppKey
from social.skyguide.errors import SkyGuideException
from social.skyguide.service import AuthServiceAppKey, CookieSessionWriter

logger = logging.getLogger(__name__)

LOGIN_FAILED_LOCATION = "/?error=oauth_failed"
LOGIN_SUCCESS_LOCATION = "/dashboard"

METADATA_HEADERS = {
    "Cache-Control": "public, max-age=3600",
    "Access-Control-Allow-Origin": "*",
}


class ATProtocolOAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 Client Metadata for AT Protocol integration.

    Follows the OAuth 2.0 Dynamic Client Registration Protocol (RFC 7591)
    with the AT Protocol requirement that access tokens are DPoP-bound.
    Authorization servers fetch this document from the client id URL.
    """

    client_id: str
    """Client identifier URI, the URL of this document"""

    client_name: str
    """Human-readable name of the client application"""

    client_uri: str
    """URI of the client's homepage"""

    redirect_uris: List[str]
    """List of allowed redirect URIs for this client"""

    scope: str
    """OAuth scopes requested by this client"""

    grant_types: List[str]
    response_types: List[str]

    application_type: str
    """Type of application (web, native)"""

    token_endpoint_auth_method: str
    """Authentication method for the token endpoint"""

    dpop_bound_access_tokens: bool
    """Whether access tokens are bound to DPoP proofs"""

    jwks_uri: Optional[str] = None
    token_endpoint_auth_signing_alg: Optional[str] = None


def is_callback(query: Mapping[str, str]) -> bool:
    """True when a query carries an authorization server response.

    The app's own ``error=oauth_failed`` marker has no state and is not one.
    """
    if "state" not in query:
        return False
    return "code" in query or "error" in query


def redirect(location: str) -> web.Response:
    """A 302 that can carry cookies."""
    return web.Response(status=302, headers={hdrs.LOCATION: location})


async def complete_login(request: web.Request):
    settings = request.app[SettingsAppKey]
    auth_service = request.app[AuthServiceAppKey]

    response = redirect(LOGIN_SUCCESS_LOCATION)
    result = await auth_service.complete_login(
        str(request.url), CookieSessionWriter(response, settings)
    )
    if not result.success:
        logger.info("Callback rejected: %s", result.error)
        raise web.HTTPFound(LOGIN_FAILED_LOCATION)

    if result.profile is not None:
        logger.info(
            "Welcome %s (@%s)", result.profile.display_name, result.profile.handle
        )
    return response


async def handle_login(request: web.Request):
    """
    Start the OAuth flow.

    Query Parameters:
        handle: Optional AT Protocol handle, DID or service URL

    Raises:
        HTTPFound: To the authorization server, or back home on failure
    """
    auth_service = request.app[AuthServiceAppKey]
    handle: Optional[str] = request.query.get("handle", None)

    try:
        authorization_url = await auth_service.login(handle)
    except SkyGuideException as e:
        logger.exception("login error")
        sentry_sdk.capture_exception(e)
        raise web.HTTPFound(LOGIN_FAILED_LOCATION)

    raise web.HTTPFound(authorization_url)


async def handle_index(request: web.Request):
    """The registered redirect URI. Completes callbacks, otherwise reports status."""
    if is_callback(request.query):
        return await complete_login(request)

    settings = request.app[SettingsAppKey]
    auth_service = request.app[AuthServiceAppKey]
    did = request.cookies.get(settings.session_cookie_name, None)
    return web.json_response(
        {
            "client_name": settings.client_name,
            "authenticated": await auth_service.is_valid(did),
            "error": request.query.get("error", None),
        }
    )


async def handle_callback(request: web.Request):
    return await complete_login(request)


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    auth_service = request.app[AuthServiceAppKey]

    did = request.cookies.get(settings.session_cookie_name, None)
    response = redirect("/")
    await auth_service.logout(did, CookieSessionWriter(response, settings))
    return response


def client_metadata(settings: Settings) -> ATProtocolOAuthClientMetadata:
    client_metadata = ATProtocolOAuthClientMetadata(
        client_id=settings.client_metadata_url,
        client_name=settings.client_name,
        client_uri=settings.public_url,
        redirect_uris=[settings.redirect_uri],
        scope=settings.scope,
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        application_type="web",
        token_endpoint_auth_method=settings.token_endpoint_auth_method,
        dpop_bound_access_tokens=True,
    )
    if settings.token_endpoint_auth_method == "private_key_jwt":
        client_metadata.jwks_uri = settings.jwks_url
        client_metadata.token_endpoint_auth_signing_alg = "ES256"
    return client_metadata


async def handle_client_metadata(request: web.Request):
    """
    Handle OAuth client metadata endpoint request.

    Authorization servers fetch this document to validate the redirect URI
    and scope of requests made with the hosted client id.
    """
    settings = request.app[SettingsAppKey]
    return web.json_response(
        client_metadata(settings).model_dump(exclude_none=True),
        headers=METADATA_HEADERS,
    )


async def handle_jwks(request: web.Request):
    """
    Handle JWKS (JSON Web Key Set) endpoint request.

    Empty while the client authenticates with "none"; otherwise the public
    portions of the active signing keys.
    """
    settings = request.app[SettingsAppKey]
    results: List[Dict[str, Any]] = []
    if settings.token_endpoint_auth_method == "private_key_jwt":
        for kid in settings.active_signing_keys:
            key = settings.json_web_keys.get_key(kid)
            if key is None:
                continue
            results.append(key.export_public(as_dict=True))
    return web.json_response({"keys": results}, headers=METADATA_HEADERS)


async def handle_api_me(request: web.Request):
    """The signed-in user, read from the session cookie."""
    settings = request.app[SettingsAppKey]
    auth_service = request.app[AuthServiceAppKey]

    did = request.cookies.get(settings.session_cookie_name, None)
    if not did or not await auth_service.is_valid(did):
        return web.json_response(
            {"error": "Not Authorized", "session_valid": False}, status=401
        )

    profile: Optional[Dict[str, Any]] = None
    try:
        agent = await auth_service.agent(did)
        profile = (await agent.get_profile()).model_dump()
    except SkyGuideException as e:
        logger.warning("Unable to load profile for %s: %s", did, e)
        sentry_sdk.capture_exception(e)

    return web.json_response({"did": did, "session_valid": True, "profile": profile})
