"""
Middleware chain for outbound AT Protocol requests.

Every call to an authorization server or PDS goes through a
``ChainMiddlewareClient``. Middleware wrap the final aiohttp request and may
ask for the request to be replayed by returning a third tuple element, which
is how DPoP nonce challenges are answered without the caller noticing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
)
import logging
from urllib.parse import urlparse

from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk
from multidict import CIMultiDictProxy

from social.skyguide.app.metrics import MetricsClient
from social.skyguide.atproto.jwt import create_client_assertion_jwt, create_dpop_jwt

RequestFunc = Callable[..., Awaitable[ClientResponse]]

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

logger = logging.getLogger(__name__)


class ChainRetryExhausted(Exception):
    """The chain asked for more replays than the context allows."""


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=dict(request.kwargs) if request.kwargs is not None else None,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            try:
                body = await response.json()
            except ValueError:
                logger.debug("Undecodable JSON body from %s", response.url)
                body = await response.text()
            return ChainResponse(status=status, headers=headers, body=body)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def json_body(self) -> Optional[Dict[str, Any]]:
        if isinstance(self.body, dict):
            return self.body
        return None


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    """Counts and times outbound requests by host and status."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        host = urlparse(str(request.url)).hostname or ""
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        except Exception as e:
            self._metrics_client.increment(
                "skyguide.client.request.exception",
                1,
                tag_dict={"exception": type(e).__name__, "host": host},
            )
            raise
        finally:
            self._metrics_client.timer(
                "skyguide.client.request.time",
                time() - start_time,
                tag_dict={"host": host, "method": request.method.lower()},
            )
            self._metrics_client.increment(
                "skyguide.client.request.count",
                1,
                tag_dict={"host": host, "status": status},
            )


class DebugMiddleware(RequestMiddlewareBase):
    """Logs request lines and response status. Never logs headers or bodies."""

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        logger.debug("request: %s %s", request.method, request.url)
        response = await next(request)
        logger.debug(
            "response: %s %s -> %s", request.method, request.url, response[1].status
        )
        return response


class GenerateClaimAssertionMiddleware(RequestMiddlewareBase):
    """Adds a freshly signed ``private_key_jwt`` assertion to form requests."""

    def __init__(
        self,
        signing_key: jwk.JWK,
        signing_key_id: str,
        client_id: str,
        audience: str,
    ) -> None:
        super().__init__()
        self._signing_key = signing_key
        self._signing_key_id = signing_key_id
        self._client_id = client_id
        self._audience = audience

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:

        if request.kwargs is None:
            return await next(request)

        data: Dict[str, str] = dict(request.kwargs.get("data", None) or {})
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = create_client_assertion_jwt(
            self._signing_key, self._signing_key_id, self._client_id, self._audience
        )
        request.kwargs["data"] = data

        return await next(request)


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Attaches a DPoP proof to every attempt and answers nonce challenges.

    Authorization servers signal a missing or stale nonce with a 400 and
    ``{"error": "use_dpop_nonce"}``; resource servers use a 401 with
    ``WWW-Authenticate: DPoP error="use_dpop_nonce"``. In both cases the new
    nonce arrives in the ``DPoP-Nonce`` header and the request is replayed
    once per distinct nonce. The latest nonce is kept on ``self.nonce`` so a
    caller can carry it into the next request to the same server.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._access_token = access_token
        self.nonce = nonce

    @staticmethod
    def _is_nonce_challenge(chain_response: ChainResponse) -> bool:
        if chain_response.status not in (400, 401):
            return False
        if chain_response.body_matches_kv(
            "error", "use_dpop_nonce"
        ) or chain_response.body_matches_kv("error", "invalid_dpop_proof"):
            return True
        www_authenticate = chain_response.headers.get(hdrs.WWW_AUTHENTICATE, "")
        return "use_dpop_nonce" in www_authenticate

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        used_nonce = self.nonce

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = create_dpop_jwt(
            self._dpop_key,
            request.method,
            str(request.url),
            nonce=used_nonce,
            access_token=self._access_token,
        )

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        received_nonce = chain_response.headers.get("DPoP-Nonce", None)
        if received_nonce:
            self.nonce = received_nonce

        if (
            self._is_nonce_challenge(chain_response)
            and received_nonce
            and received_nonce != used_nonce
        ):
            logger.debug("Replaying %s %s with new DPoP nonce", request.method, request.url)
            if new_request is None:
                new_request = ChainRequest.from_chain_request(request)

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class SendRequestMiddleware:
    """Terminal link of the chain: performs the aiohttp request.

    Statuses are never raised for; callers inspect them, since a 400 or 401
    may be a nonce challenge rather than a failure.
    """

    def __init__(self, request_func: RequestFunc) -> None:
        self._request_func = request_func

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx=dict(request.trace_request_ctx or {}),
            **(request.kwargs or {}),
        )
        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    """Runs a chain until no middleware asks for a replay.

    Awaitable directly, or usable as an async context manager that closes the
    last response on exit.
    """

    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max

        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        chain_request = self._chain_request

        for attempt in range(1, self._attempt_max + 1):
            logger.debug(
                "Attempt %d of %d: %s %s",
                attempt,
                self._attempt_max,
                chain_request.method,
                chain_request.url,
            )

            response = await self._chain_callback(chain_request)
            self.client_response = response[0]

            if len(response) == 2:
                return response[0], response[1]

            if not self.client_response.closed:
                self.client_response.close()
            chain_request = response[2]

        raise ChainRetryExhausted(
            f"Max attempts reached for {self._chain_request.method} {self._chain_request.url}"
        )

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """Sends requests through a fixed list of middleware.

    The first middleware in the list is the outermost: it sees the request
    first and the response last.
    """

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
    ) -> None:
        self._client = client_session
        self._middleware = list(middleware or [])

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self.request(hdrs.METH_GET, url, **kwargs)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self.request(hdrs.METH_POST, url, **kwargs)

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=dict(kwargs.pop("headers", None) or {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        chain_callback: NextChainCallbackType = SendRequestMiddleware(
            self._client.request
        ).handle
        for mw in reversed(self._middleware):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(chain_callback, chain_request)
