"""
Authentication service facade.

``AuthService`` is the single entry point the web layer uses for login,
callback completion, logout and "who is the current user" checks. One
instance is constructed at startup and stored on the aiohttp application
under ``AuthServiceAppKey``; every request handler shares its stores.
"""

import logging
from typing import Any, Dict, Final, Optional, Protocol

from aiohttp import ClientSession, web
from pydantic import BaseModel
import sentry_sdk

from social.skyguide.app.config import Settings
from social.skyguide.app.metrics import MetricsClient
from social.skyguide.atproto.agent import AgentFactory, AuthenticatedClient
from social.skyguide.atproto.oauth import OAuthClient
from social.skyguide.atproto.pds import IssuerResolver
from social.skyguide.errors import SkyGuideException
from social.skyguide.model.profile import Profile
from social.skyguide.store.base import SessionStore, StateStore
from social.skyguide.store.memory import MemorySessionStore, MemoryStateStore

logger = logging.getLogger(__name__)


class LoginResult(BaseModel):
    """Outcome of a callback. ``error`` names the failure kind only."""

    success: bool
    did: Optional[str] = None
    profile: Optional[Profile] = None
    error: Optional[str] = None


class SessionWriter(Protocol):
    """Sets or clears the transport-level marker naming the current user."""

    def set_subject(self, did: str) -> None: ...

    def clear_subject(self) -> None: ...


class CookieSessionWriter:
    """Writes the session cookie onto an aiohttp response."""

    def __init__(self, response: web.StreamResponse, settings: Settings) -> None:
        self._response = response
        self._settings = settings

    def set_subject(self, did: str) -> None:
        self._response.set_cookie(
            self._settings.session_cookie_name,
            did,
            max_age=self._settings.session_cookie_max_age,
            path="/",
            httponly=True,
            samesite="Lax",
            secure=not self._settings.development_mode,
        )

    def clear_subject(self) -> None:
        self._response.del_cookie(self._settings.session_cookie_name, path="/")


class AuthService:
    def __init__(
        self,
        settings: Settings,
        oauth_client: OAuthClient,
        agent_factory: AgentFactory,
        state_store: StateStore,
        session_store: SessionStore,
        metrics_client: MetricsClient,
    ) -> None:
        self._settings = settings
        self._oauth_client = oauth_client
        self._agent_factory = agent_factory
        self._state_store = state_store
        self._session_store = session_store
        self._metrics_client = metrics_client

    @staticmethod
    def create(
        settings: Settings,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        state_store: Optional[StateStore] = None,
        session_store: Optional[SessionStore] = None,
    ) -> "AuthService":
        """Wire the flow controller and client factory over shared stores.

        The in-memory stores are used unless others are given.
        """
        if state_store is None:
            state_store = MemoryStateStore()
        if session_store is None:
            session_store = MemorySessionStore()

        resolver = IssuerResolver(
            http_session, settings.plc_hostname, settings.default_service
        )
        oauth_client = OAuthClient(
            settings,
            http_session,
            metrics_client,
            state_store,
            session_store,
            resolver,
        )
        agent_factory = AgentFactory(
            oauth_client, session_store, settings, http_session, metrics_client
        )
        return AuthService(
            settings,
            oauth_client,
            agent_factory,
            state_store,
            session_store,
            metrics_client,
        )

    async def login(
        self, handle_hint: Optional[str] = None, redirect_uri: Optional[str] = None
    ) -> str:
        """Return the authorization URL to send the user to.

        Raises:
            AuthorizationSetupError: if the authorization server cannot be
                reached or resolved
        """
        return await self._oauth_client.authorize(handle_hint, redirect_uri)

    async def complete_login(
        self, callback_url: str, session_writer: SessionWriter
    ) -> LoginResult:
        """
        Finish a login from its callback URL.

        Flow errors are reported in the result rather than raised. On success
        the session writer is given the subject and a profile is fetched on a
        best-effort basis.
        """
        try:
            result = await self._oauth_client.callback(callback_url)
        except SkyGuideException as e:
            logger.warning("Login failed: %s", e)
            sentry_sdk.capture_exception(e)
            return LoginResult(success=False, error=type(e).__name__)

        session_writer.set_subject(result.did)

        profile: Optional[Profile] = None
        try:
            agent = await self._agent_factory.for_subject(result.did)
            profile = await agent.get_profile()
        except SkyGuideException as e:
            logger.warning("Profile fetch failed for %s: %s", result.did, e)

        return LoginResult(success=True, did=result.did, profile=profile)

    async def logout(self, did: Optional[str], session_writer: SessionWriter) -> None:
        """
        End the session for ``did``.

        Token revocation is attempted and its failure only logged. The
        session writer is always cleared, so calling this twice is harmless.
        """
        try:
            if did:
                session = await self._session_store.get(did)
                if session is not None:
                    try:
                        await self._oauth_client.revoke(session)
                    except Exception as e:
                        logger.warning("Token revocation failed for %s: %s", did, e)
                await self._session_store.delete(did)
                logger.info("Logged out %s", did)
                self._metrics_client.increment("skyguide.oauth.logout", 1)
        except Exception as e:
            logger.exception("logout error")
            sentry_sdk.capture_exception(e)
        finally:
            session_writer.clear_subject()

    async def is_valid(self, did: Optional[str]) -> bool:
        return await self._agent_factory.is_valid(did)

    async def agent(self, did: str) -> AuthenticatedClient:
        """
        Raises:
            NoSessionError: no session is stored for ``did``
            SessionRefreshError: the session could not be refreshed
        """
        return await self._agent_factory.for_subject(did)

    async def stats(self) -> Dict[str, int]:
        return {
            "active_sessions": await self._session_store.count(),
            "state_entries": await self._state_store.count(),
        }

    def describe_config(self) -> Dict[str, Any]:
        """Configuration summary with secrets left out."""
        settings = self._settings
        return {
            "public_url": settings.public_url,
            "client_id": settings.effective_client_id,
            "redirect_uri": settings.redirect_uri,
            "scope": settings.scope,
            "development_mode": settings.development_mode,
            "token_endpoint_auth_method": settings.token_endpoint_auth_method,
            "default_service": settings.default_service,
            "http_timeout": settings.http_timeout,
            "state_ttl": settings.state_ttl,
            "metrics_backend": settings.metrics_backend,
            "sentry": settings.sentry_dsn is not None,
        }

    async def cleanup(self) -> int:
        """Evict expired authorization state."""
        removed = await self._state_store.cleanup()
        if removed:
            logger.info("Removed %d expired authorization requests", removed)
        return removed


AuthServiceAppKey: Final = web.AppKey("auth_service", AuthService)
"""AppKey for accessing the authentication service"""
