"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using DNS TXT records and HTTPS well-known
endpoints, then resolves the DID document (did:plc or did:web) to find the
subject's Personal Data Server.
"""

import asyncio
from enum import IntEnum
import logging
import re
from typing import Any, Dict, Optional

from aiodns import DNSResolver
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
import sentry_sdk

logger = logging.getLogger(__name__)

# https://atproto.com/specs/handle#handle-identifier-syntax
HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration."""

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    Contains DID, handle, and PDS endpoint for a fully resolved subject.
    """

    did: str
    handle: str
    pds: str


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS TXT record.

    Queries _atproto.{handle} TXT record and extracts DID from did= prefix.

    Returns:
        DID string if found, None if resolution fails
    """
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        logger.debug("DNS handle resolution failed for %s: %s", handle, e)
        return None
    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        if text.startswith("did="):
            return text.removeprefix("did=")
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using HTTPS well-known endpoint.

    Fetches DID from https://{handle}/.well-known/atproto-did endpoint.

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            if body.startswith("did:"):
                return body
            return None
    except (ClientError, asyncio.TimeoutError) as e:
        logger.debug("HTTP handle resolution failed for %s: %s", handle, e)
        return None


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS and HTTPS concurrently.

    Attempts both DNS TXT and HTTPS well-known resolution, preferring DNS.
    """
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle))
    if dns_result.result() is not None:
        return dns_result.result()
    return http_result.result()


def handle_predicate(value: str) -> bool:
    """True if value is an at:// handle reference from alsoKnownAs."""
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """True if a DID document service entry is an AT Protocol PDS."""
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def subject_from_did_document(
    did: str, body: Optional[Dict[str, Any]]
) -> Optional[ResolvedSubject]:
    """Extract handle and PDS from a DID document body."""
    if body is None:
        return None
    handle = next(filter(handle_predicate, body.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, body.get("service", [])), None)
    if handle is None or pds is None:
        return None
    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://"),
        pds=pds.get("serviceEndpoint").rstrip("/"),
    )


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    """Location of the DID document for a did:plc or did:web DID."""
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 0 or parts[0] == "":
            return None
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    return None


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[ResolvedSubject]:
    """Resolve DID to complete subject information.

    Returns:
        ResolvedSubject if successful, None if unsupported or failed
    """
    url = did_document_url(plc_hostname, did)
    if url is None:
        return None

    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        body = await resp.json(content_type=None)
    return subject_from_did_document(did, body)


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve AT Protocol subject (handle or DID) to complete information.

    Parses input, resolves handle to DID if needed, then resolves DID.
    Transport failures resolving the DID document propagate to the caller.

    Returns:
        ResolvedSubject if successful, None if the subject is malformed or
        does not resolve
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        return None

    did: Optional[str] = None
    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle(session, parsed_subject.subject)
    else:
        did = parsed_subject.subject

    if did is None:
        logger.info("Handle %s did not resolve to a DID", parsed_subject.subject)
        return None

    try:
        return await resolve_did(session, plc_hostname, did)
    except ValueError as e:
        sentry_sdk.capture_exception(e)
        return None


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Returns:
        ParsedSubject with type and normalized string, or None when the input
        is neither a supported DID nor a syntactically valid handle
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    if len(subject) > 253 or not HANDLE_PATTERN.match(subject):
        return None

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())
