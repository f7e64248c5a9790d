"""
Authorization server discovery for AT Protocol subjects.

A login hint (handle, DID or service URL) is turned into the endpoints of the
authorization server responsible for it:

    handle/DID -> DID document -> PDS
    PDS -> /.well-known/oauth-protected-resource -> authorization server
    authorization server -> /.well-known/oauth-authorization-server
"""

import asyncio
import logging
from typing import Any, Optional

from aiohttp import ClientError, ClientSession
from pydantic import BaseModel

from social.skyguide.errors import AuthorizationSetupError
from social.skyguide.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


class ResolvedIssuer(BaseModel):
    """Endpoints of an authorization server plus the subject it was found for."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    par_endpoint: Optional[str] = None
    requires_par: bool = False
    revocation_endpoint: Optional[str] = None
    did: Optional[str] = None
    handle: Optional[str] = None
    pds: Optional[str] = None


async def oauth_protected_resource(session: ClientSession, pds: str) -> Optional[Any]:
    async with session.get(f"{pds}/.well-known/oauth-protected-resource") as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Any]:
    async with session.get(
        f"{authorization_server}/.well-known/oauth-authorization-server"
    ) as resp:
        if resp.status != 200:
            return None
        return await resp.json()


def issuer_from_metadata(
    metadata: Any,
    did: Optional[str] = None,
    handle: Optional[str] = None,
    pds: Optional[str] = None,
) -> ResolvedIssuer:
    """Validate authorization server metadata and pick out the endpoints used.

    Raises:
        AuthorizationSetupError: if a required endpoint is missing
    """
    if not isinstance(metadata, dict):
        raise AuthorizationSetupError.incomplete_metadata("document")

    for field in ("issuer", "authorization_endpoint", "token_endpoint"):
        if not metadata.get(field, None):
            raise AuthorizationSetupError.incomplete_metadata(field)

    requires_par = bool(metadata.get("require_pushed_authorization_requests", False))
    par_endpoint = metadata.get("pushed_authorization_request_endpoint", None)
    if requires_par and par_endpoint is None:
        raise AuthorizationSetupError.incomplete_metadata(
            "pushed_authorization_request_endpoint"
        )

    return ResolvedIssuer(
        issuer=metadata["issuer"],
        authorization_endpoint=metadata["authorization_endpoint"],
        token_endpoint=metadata["token_endpoint"],
        par_endpoint=par_endpoint,
        requires_par=requires_par,
        revocation_endpoint=metadata.get("revocation_endpoint", None),
        did=did,
        handle=handle,
        pds=pds,
    )


class IssuerResolver:
    """
    Resolves login hints to authorization servers.

    All outbound calls use the shared client session, so its timeout bounds
    every lookup. Any failure surfaces as ``AuthorizationSetupError``.
    """

    def __init__(
        self,
        http_session: ClientSession,
        plc_hostname: str,
        default_service: str,
    ) -> None:
        self._http_session = http_session
        self._plc_hostname = plc_hostname
        self._default_service = default_service.rstrip("/")

    async def resolve(self, handle_hint: Optional[str] = None) -> ResolvedIssuer:
        """Resolve a handle, DID or service URL to its authorization server.

        An empty hint resolves the configured default service.
        """
        hint = (handle_hint or "").strip()
        try:
            if hint == "":
                return await self._from_service(self._default_service)

            if hint.startswith("https://"):
                return await self._from_service(hint.rstrip("/"))

            resolved_subject = await resolve_subject(
                self._http_session, self._plc_hostname, hint
            )
            if resolved_subject is None:
                raise AuthorizationSetupError.unresolvable_subject(hint)

            logger.debug(
                "Resolved %s to %s at %s",
                hint,
                resolved_subject.did,
                resolved_subject.pds,
            )
            return await self._from_service(
                resolved_subject.pds,
                did=resolved_subject.did,
                handle=resolved_subject.handle,
            )
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AuthorizationSetupError.transport(type(e).__name__) from e

    async def from_issuer(self, issuer: str) -> ResolvedIssuer:
        """Fetch the current metadata of a known issuer.

        Used by refresh and revocation, which only have the issuer on file.

        Raises:
            AuthorizationSetupError: if the metadata cannot be fetched, decoded
                or validated
        """
        try:
            metadata = await oauth_authorization_server(self._http_session, issuer)
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AuthorizationSetupError.transport(type(e).__name__) from e
        if metadata is None:
            raise AuthorizationSetupError.no_authorization_server()
        return issuer_from_metadata(metadata)

    async def _from_service(
        self,
        service: str,
        did: Optional[str] = None,
        handle: Optional[str] = None,
    ) -> ResolvedIssuer:
        protected_resource = await oauth_protected_resource(self._http_session, service)

        if protected_resource is None:
            # An entryway is its own authorization server and publishes no
            # protected resource document.
            if did is not None:
                raise AuthorizationSetupError.no_protected_resource(service)
            authorization_server_url = service
        else:
            authorization_server_url = next(
                iter(protected_resource.get("authorization_servers", [])), None
            )
            if authorization_server_url is None:
                raise AuthorizationSetupError.no_authorization_server()

        metadata = await oauth_authorization_server(
            self._http_session, authorization_server_url.rstrip("/")
        )
        if metadata is None:
            raise AuthorizationSetupError.no_authorization_server()

        return issuer_from_metadata(metadata, did=did, handle=handle, pds=service)
