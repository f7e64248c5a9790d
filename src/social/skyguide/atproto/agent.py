"""
Authenticated XRPC access to a subject's PDS.

``AgentFactory`` turns a stored session into an ``AuthenticatedClient``,
refreshing the session first when its access token is about to expire.
Refreshes for the same subject are single-flight: concurrent callers wait for
the one refresh in progress and then use its result.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional
from weakref import WeakValueDictionary

from aiohttp import ClientSession, hdrs

from social.skyguide.app.config import Settings
from social.skyguide.app.metrics import MetricsClient
from social.skyguide.atproto.chain import (
    ChainMiddlewareClient,
    DebugMiddleware,
    GenerateDpopMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.skyguide.atproto.jwt import load_dpop_key
from social.skyguide.atproto.oauth import TRANSPORT_ERRORS, OAuthClient
from social.skyguide.errors import NoSessionError, UpstreamProtocolError
from social.skyguide.model.oauth import OAuthSession
from social.skyguide.model.profile import Profile
from social.skyguide.store.base import SessionStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_THREAD_DEPTH = 10


def page_size(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE_SIZE))


class AuthenticatedClient:
    """XRPC client bound to one session. Never persisted."""

    def __init__(
        self,
        session: OAuthSession,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        dpop_nonces: Dict[str, str],
        debug: bool = False,
    ) -> None:
        self._session = session
        self._http_session = http_session
        self._metrics_client = metrics_client
        self._dpop_nonces = dpop_nonces
        self._debug = debug

    @property
    def did(self) -> str:
        return self._session.did

    @property
    def session(self) -> OAuthSession:
        return self._session

    async def call(
        self,
        method: str,
        nsid: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """
        Make an XRPC call to the subject's PDS.

        Returns the decoded JSON body, or the raw body for other content types.

        Raises:
            UpstreamProtocolError: on a transport failure or non-2xx status
        """
        audience = self._session.audience
        url = f"{audience}/xrpc/{nsid}"

        dpop_middleware = GenerateDpopMiddleware(
            load_dpop_key(self._session.dpop_jwk),
            nonce=self._dpop_nonces.get(audience, None),
            access_token=self._session.access_token,
        )
        middleware: list[RequestMiddlewareBase] = [StatsdMiddleware(self._metrics_client)]
        if self._debug:
            middleware.append(DebugMiddleware())
        middleware.append(dpop_middleware)
        chain_client = ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=middleware,
        )

        headers = {hdrs.AUTHORIZATION: f"DPoP {self._session.access_token}"}
        kwargs: Dict[str, Any] = {}
        if params is not None:
            kwargs["params"] = params
        if json is not None:
            kwargs["json"] = json

        try:
            async with chain_client.request(
                method, url, headers=headers, **kwargs
            ) as (client_response, chain_response):
                status = client_response.status
                body = chain_response.body
        except TRANSPORT_ERRORS as e:
            raise UpstreamProtocolError(
                f"XRPC {nsid} failed: {type(e).__name__}"
            ) from e
        finally:
            if dpop_middleware.nonce is not None:
                self._dpop_nonces[audience] = dpop_middleware.nonce

        if status < 200 or status >= 300:
            raise UpstreamProtocolError(f"XRPC {nsid} returned {status}", status=status)

        return body

    async def query(self, nsid: str, **params: Any) -> Dict[str, Any]:
        """GET an XRPC query and return its JSON object.

        Parameters that are None are left out.

        Raises:
            UpstreamProtocolError: as for ``call``, or when the body is not a
                JSON object
        """
        body = await self.call(
            hdrs.METH_GET,
            nsid,
            params={k: v for k, v in params.items() if v is not None},
        )
        if not isinstance(body, dict):
            raise UpstreamProtocolError(f"{nsid} returned a non-JSON body")
        return body

    async def get_profile(self, actor: Optional[str] = None) -> Profile:
        body = await self.query(
            "app.bsky.actor.getProfile", actor=actor or self._session.did
        )
        return Profile.from_xrpc(body)

    async def get_timeline(
        self, limit: int = 10, cursor: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.query(
            "app.bsky.feed.getTimeline", limit=page_size(limit), cursor=cursor
        )

    async def get_author_feed(
        self, actor: Optional[str] = None, limit: int = 10, cursor: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.query(
            "app.bsky.feed.getAuthorFeed",
            actor=actor or self._session.did,
            limit=page_size(limit),
            cursor=cursor,
        )

    async def get_post_thread(self, uri: str, depth: int = 6) -> Dict[str, Any]:
        return await self.query(
            "app.bsky.feed.getPostThread",
            uri=uri,
            depth=max(0, min(depth, MAX_THREAD_DEPTH)),
        )

    async def get_actor_likes(
        self, actor: Optional[str] = None, limit: int = 10, cursor: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.query(
            "app.bsky.feed.getActorLikes",
            actor=actor or self._session.did,
            limit=page_size(limit),
            cursor=cursor,
        )

    async def get_follows(
        self, actor: Optional[str] = None, limit: int = 20, cursor: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.query(
            "app.bsky.graph.getFollows",
            actor=actor or self._session.did,
            limit=page_size(limit),
            cursor=cursor,
        )

    async def get_followers(
        self, actor: Optional[str] = None, limit: int = 20, cursor: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.query(
            "app.bsky.graph.getFollowers",
            actor=actor or self._session.did,
            limit=page_size(limit),
            cursor=cursor,
        )


class AgentFactory:
    """Builds authenticated clients from stored sessions."""

    def __init__(
        self,
        oauth_client: OAuthClient,
        session_store: SessionStore,
        settings: Settings,
        http_session: ClientSession,
        metrics_client: MetricsClient,
    ) -> None:
        self._oauth_client = oauth_client
        self._session_store = session_store
        self._settings = settings
        self._http_session = http_session
        self._metrics_client = metrics_client
        self._dpop_nonces: Dict[str, str] = {}
        self._refresh_locks: "WeakValueDictionary[str, asyncio.Lock]" = (
            WeakValueDictionary()
        )

    def _is_stale(self, session: OAuthSession) -> bool:
        return session.is_stale(
            datetime.now(timezone.utc), self._settings.token_refresh_leeway
        )

    async def for_subject(self, did: str) -> AuthenticatedClient:
        """
        Return a client for ``did``, refreshing its session if needed.

        Raises:
            NoSessionError: no session is stored for ``did``
            SessionRefreshError: the session was stale and could not be
                refreshed
        """
        session = await self._session_store.get(did)
        if session is None:
            raise NoSessionError(did)

        if self._is_stale(session):
            session = await self._refresh(did)

        return AuthenticatedClient(
            session,
            self._http_session,
            self._metrics_client,
            self._dpop_nonces,
            debug=self._settings.debug,
        )

    async def _refresh(self, did: str) -> OAuthSession:
        lock = self._refresh_locks.get(did)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[did] = lock

        async with lock:
            # Another caller may have refreshed while this one waited.
            session = await self._session_store.get(did)
            if session is None:
                raise NoSessionError(did)
            if not self._is_stale(session):
                return session
            logger.debug("Refreshing stale session for %s", did)
            return await self._oauth_client.refresh(session)

    async def is_valid(self, did: Optional[str]) -> bool:
        """True when a usable session is stored for ``did``.

        A stale session still counts while it holds a refresh token. Never
        refreshes and never raises.
        """
        if not did:
            return False
        try:
            session = await self._session_store.get(did)
        except Exception as e:
            logger.warning("Session lookup failed for %s: %s", did, e)
            return False
        if session is None:
            return False
        return not self._is_stale(session) or bool(session.refresh_token)
