"""
AT Protocol OAuth Client Implementation

This module implements the OAuth 2.0 client used to sign users in with their
AT Protocol account. It initiates authorization requests, completes callbacks
and refreshes or revokes the resulting sessions.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 JWT Client Authentication (RFC 7523), for ``private_key_jwt``
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126), when the
  authorization server requires it

The flow is implemented in three stages:
1. Authorization (`OAuthClient.authorize`): resolve the authorization server,
   prepare PKCE and DPoP material, store the request state and build the URL
   the user is redirected to
2. Callback (`OAuthClient.callback`): validate and consume the request state,
   exchange the authorization code for tokens and store the session
3. Refresh (`OAuthClient.refresh`): use the refresh token to obtain a new
   access token once the current one is about to expire
"""

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any, Dict, Optional, Tuple, Type, Union
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import BaseModel

from social.skyguide.app.config import Settings
from social.skyguide.app.metrics import MetricsClient
from social.skyguide.atproto.chain import (
    ChainMiddlewareClient,
    ChainRetryExhausted,
    DebugMiddleware,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from social.skyguide.atproto.jwt import (
    generate_dpop_key,
    generate_pkce_verifier,
    load_dpop_key,
)
from social.skyguide.atproto.pds import IssuerResolver, ResolvedIssuer
from social.skyguide.errors import (
    AuthorizationDeniedError,
    AuthorizationSetupError,
    InvalidStateError,
    MissingCodeError,
    SessionRefreshError,
    TokenExchangeError,
)
from social.skyguide.model.oauth import OAuthRequest, OAuthSession
from social.skyguide.store.base import SessionStore, StateStore

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (ClientError, asyncio.TimeoutError, ChainRetryExhausted)

DEFAULT_EXPIRES_IN = 1800


class CallbackResult(BaseModel):
    did: str
    session: OAuthSession


def with_query(url: str, params: Dict[str, str]) -> str:
    """Append ``params`` to ``url``, keeping any query it already has."""
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


class OAuthClient:
    """
    OAuth flow controller for AT Protocol authorization servers.

    Owns no state of its own beyond the most recent DPoP nonce seen per
    authorization server; request state and sessions live in the stores it is
    given.
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        state_store: StateStore,
        session_store: SessionStore,
        resolver: IssuerResolver,
    ) -> None:
        self._settings = settings
        self._http_session = http_session
        self._metrics_client = metrics_client
        self._state_store = state_store
        self._session_store = session_store
        self._resolver = resolver
        self._dpop_nonces: Dict[str, str] = {}

        self._signing_key: Optional[Tuple[jwk.JWK, str]] = None
        if settings.token_endpoint_auth_method == "private_key_jwt":
            signing_key_id = settings.signing_key_id
            signing_key = settings.json_web_keys.get_key(signing_key_id)
            if signing_key is None:
                raise ValueError(
                    f"Active signing key {signing_key_id} not found in json_web_keys"
                )
            self._signing_key = (signing_key, signing_key_id)

    @property
    def client_id(self) -> str:
        return self._settings.effective_client_id

    def _chain_client(
        self, dpop_middleware: GenerateDpopMiddleware, issuer: str
    ) -> ChainMiddlewareClient:
        middleware: list[RequestMiddlewareBase] = [StatsdMiddleware(self._metrics_client)]
        if self._settings.debug:
            middleware.append(DebugMiddleware())
        middleware.append(dpop_middleware)
        if self._signing_key is not None:
            signing_key, signing_key_id = self._signing_key
            middleware.append(
                GenerateClaimAssertionMiddleware(
                    signing_key, signing_key_id, self.client_id, issuer
                )
            )
        return ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=middleware,
        )

    async def _post_form(
        self,
        url: str,
        issuer: str,
        dpop_key: jwk.JWK,
        data: Dict[str, str],
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        """POST a DPoP-bound form to an authorization server endpoint.

        The nonce the server hands out is remembered per issuer and sent with
        the next request to it.
        """
        dpop_middleware = GenerateDpopMiddleware(
            dpop_key, nonce=self._dpop_nonces.get(issuer, None)
        )
        chain_client = self._chain_client(dpop_middleware, issuer)
        try:
            async with chain_client.post(url, data=data) as (
                client_response,
                chain_response,
            ):
                status = client_response.status
                body = chain_response.json_body()
        finally:
            if dpop_middleware.nonce is not None:
                self._dpop_nonces[issuer] = dpop_middleware.nonce
        return status, body

    async def _token_request(
        self,
        token_endpoint: str,
        issuer: str,
        dpop_key: jwk.JWK,
        data: Dict[str, str],
        error_type: Union[Type[TokenExchangeError], Type[SessionRefreshError]],
    ) -> Dict[str, Any]:
        try:
            status, body = await self._post_form(token_endpoint, issuer, dpop_key, data)
        except TRANSPORT_ERRORS as e:
            raise error_type.transport(type(e).__name__) from e

        if status != 200:
            logger.info(
                "Token endpoint %s returned %s: %s",
                token_endpoint,
                status,
                (body or {}).get("error", None),
            )
            raise error_type.bad_status(status)

        if body is None:
            raise error_type.malformed("body")

        for field in ("access_token", "refresh_token"):
            if not isinstance(body.get(field, None), str) or body[field] == "":
                raise error_type.malformed(field)

        token_type = body.get("token_type", None)
        if token_type is not None and str(token_type).lower() != "dpop":
            raise error_type.malformed("token_type")

        expires_in = body.get("expires_in", None)
        if expires_in is None:
            body["expires_in"] = DEFAULT_EXPIRES_IN
        else:
            try:
                body["expires_in"] = int(expires_in)
            except (TypeError, ValueError, OverflowError) as e:
                raise error_type.malformed("expires_in") from e
            if body["expires_in"] <= 0:
                raise error_type.malformed("expires_in")

        return body

    async def authorize(
        self,
        handle_hint: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> str:
        """
        Start an authorization request and return the URL to redirect to.

        Args:
            handle_hint: Handle, DID or service URL. Empty means the default
                service.
            redirect_uri: Callback URL, defaulting to the configured one
            scope: Requested scope, defaulting to the configured one

        Raises:
            AuthorizationSetupError: if the authorization server cannot be
                resolved or refuses a pushed request
        """
        redirect_uri = redirect_uri or self._settings.redirect_uri
        scope = scope or self._settings.scope

        resolved = await self._resolver.resolve(handle_hint)

        state = secrets.token_urlsafe(32)
        (pkce_verifier, code_challenge) = generate_pkce_verifier()
        (dpop_key, _) = generate_dpop_key()

        now = datetime.now(timezone.utc)
        await self._state_store.put(
            state,
            OAuthRequest(
                state=state,
                pkce_verifier=pkce_verifier,
                scope=scope,
                issuer=resolved.issuer,
                token_endpoint=resolved.token_endpoint,
                redirect_uri=redirect_uri,
                dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
                did=resolved.did,
                handle=resolved.handle,
                pds=resolved.pds,
                created_at=now,
                expires_at=now + timedelta(seconds=self._settings.state_ttl),
            ),
        )

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        login_hint = resolved.handle or resolved.did
        if login_hint:
            params["login_hint"] = login_hint

        if resolved.requires_par:
            try:
                request_uri = await self._push_authorization_request(
                    resolved, dpop_key, params
                )
            except AuthorizationSetupError:
                await self._state_store.delete(state)
                self._metrics_client.increment(
                    "skyguide.oauth.authorize", 1, tag_dict={"result": "par_failed"}
                )
                raise
            authorization_url = with_query(
                resolved.authorization_endpoint,
                {"client_id": self.client_id, "request_uri": request_uri},
            )
        else:
            authorization_url = with_query(resolved.authorization_endpoint, params)

        logger.info(
            "Authorization request %s started for %s at %s",
            state,
            resolved.did or resolved.pds,
            resolved.issuer,
        )
        self._metrics_client.increment(
            "skyguide.oauth.authorize", 1, tag_dict={"result": "ok"}
        )
        return authorization_url

    async def _push_authorization_request(
        self,
        resolved: ResolvedIssuer,
        dpop_key: jwk.JWK,
        params: Dict[str, str],
    ) -> str:
        assert resolved.par_endpoint is not None
        try:
            status, body = await self._post_form(
                resolved.par_endpoint, resolved.issuer, dpop_key, params
            )
        except TRANSPORT_ERRORS as e:
            raise AuthorizationSetupError.transport(type(e).__name__) from e

        if status not in (200, 201):
            raise AuthorizationSetupError.par_failed(status)

        request_uri = (body or {}).get("request_uri", None)
        if request_uri is None:
            raise AuthorizationSetupError.incomplete_metadata("request_uri")
        return request_uri

    async def callback(self, callback_url: str) -> CallbackResult:
        """
        Complete an authorization request from the callback URL.

        The request state named by the callback is consumed whatever the
        outcome, so a replayed callback fails with ``InvalidStateError``.

        Raises:
            AuthorizationDeniedError: the callback carries an ``error``
            MissingCodeError: the callback carries neither code nor error
            InvalidStateError: the state is absent, unknown, expired or the
                issuer does not match
            TokenExchangeError: the code could not be exchanged
        """
        query = dict(parse_qsl(urlparse(callback_url).query))
        state = query.get("state", None)

        error = query.get("error", None)
        if error:
            if state:
                await self._state_store.pop(state)
            self._metrics_client.increment(
                "skyguide.oauth.callback", 1, tag_dict={"result": "denied"}
            )
            raise AuthorizationDeniedError(error, query.get("error_description", None))

        code = query.get("code", None)
        if not code:
            if state:
                await self._state_store.pop(state)
            raise MissingCodeError()

        if not state:
            raise InvalidStateError.missing()

        oauth_request = await self._state_store.pop(state)
        if oauth_request is None:
            raise InvalidStateError.unknown()

        issuer = query.get("iss", None)
        if issuer is not None and issuer != oauth_request.issuer:
            raise InvalidStateError.issuer_mismatch()

        dpop_key = load_dpop_key(oauth_request.dpop_jwk)
        token_response = await self._token_request(
            oauth_request.token_endpoint,
            oauth_request.issuer,
            dpop_key,
            {
                "client_id": self.client_id,
                "redirect_uri": oauth_request.redirect_uri,
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": oauth_request.pkce_verifier,
            },
            TokenExchangeError,
        )

        subject = token_response.get("sub", None)
        if not subject:
            raise TokenExchangeError.malformed("sub")

        audience = oauth_request.pds
        handle = oauth_request.handle
        if oauth_request.did is not None:
            if subject != oauth_request.did:
                raise TokenExchangeError.subject_mismatch()
        else:
            # Logins started from a service URL learn the subject only now; it
            # must belong to the issuer that authenticated it.
            try:
                resolved = await self._resolver.resolve(subject)
            except AuthorizationSetupError as e:
                raise TokenExchangeError.transport(str(e)) from e
            if resolved.issuer != oauth_request.issuer:
                raise TokenExchangeError.subject_mismatch()
            audience = resolved.pds
            handle = resolved.handle

        now = datetime.now(timezone.utc)
        session = OAuthSession(
            did=subject,
            issuer=oauth_request.issuer,
            audience=audience or oauth_request.issuer,
            access_token=token_response["access_token"],
            refresh_token=token_response["refresh_token"],
            scope=token_response.get("scope", None) or oauth_request.scope,
            dpop_jwk=oauth_request.dpop_jwk,
            handle=handle,
            created_at=now,
            expires_at=now + timedelta(seconds=token_response["expires_in"]),
        )
        await self._session_store.put(subject, session)

        logger.info("Authorization request %s completed for %s", state, subject)
        self._metrics_client.increment(
            "skyguide.oauth.callback", 1, tag_dict={"result": "ok"}
        )
        return CallbackResult(did=subject, session=session)

    async def refresh(self, session: OAuthSession) -> OAuthSession:
        """
        Exchange the session's refresh token for a new access token.

        The refreshed session replaces the stored one.

        Raises:
            SessionRefreshError: on any failure; the stored session is left
                untouched
        """
        try:
            resolved = await self._resolver.from_issuer(session.issuer)
        except AuthorizationSetupError as e:
            raise SessionRefreshError.transport(str(e)) from e

        dpop_key = load_dpop_key(session.dpop_jwk)
        try:
            token_response = await self._token_request(
                resolved.token_endpoint,
                session.issuer,
                dpop_key,
                {
                    "client_id": self.client_id,
                    "grant_type": "refresh_token",
                    "refresh_token": session.refresh_token,
                },
                SessionRefreshError,
            )
        except SessionRefreshError:
            self._metrics_client.increment(
                "skyguide.oauth.refresh", 1, tag_dict={"result": "error"}
            )
            raise

        subject = token_response.get("sub", session.did)
        if subject != session.did:
            raise SessionRefreshError.malformed("sub")

        now = datetime.now(timezone.utc)
        refreshed = session.model_copy(
            update={
                "access_token": token_response["access_token"],
                "refresh_token": token_response["refresh_token"],
                "scope": token_response.get("scope", None) or session.scope,
                "expires_at": now + timedelta(seconds=token_response["expires_in"]),
            }
        )
        await self._session_store.put(session.did, refreshed)

        logger.info("Refreshed session for %s", session.did)
        self._metrics_client.increment(
            "skyguide.oauth.refresh", 1, tag_dict={"result": "ok"}
        )
        return refreshed

    async def revoke(self, session: OAuthSession) -> None:
        """Revoke the session's refresh token when the issuer supports it.

        Transport failures propagate; callers treat revocation as best effort.
        """
        resolved = await self._resolver.from_issuer(session.issuer)
        if resolved.revocation_endpoint is None:
            logger.debug("Issuer %s has no revocation endpoint", session.issuer)
            return

        status, _ = await self._post_form(
            resolved.revocation_endpoint,
            session.issuer,
            load_dpop_key(session.dpop_jwk),
            {
                "client_id": self.client_id,
                "token": session.refresh_token,
                "token_type_hint": "refresh_token",
            },
        )
        logger.info("Revoked tokens for %s (status %s)", session.did, status)
