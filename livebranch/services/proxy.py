"""Reverse proxy from the front server to a worker's socket"""

import asyncio
from typing import Optional

import aiohttp
from aiohttp import web
from multidict import CIMultiDict

from livebranch.utils.logging import get_logger

logger = get_logger(__name__)

# Headers that describe a single connection and must not be forwarded
HOP_BY_HOP_HEADERS = frozenset(
    [
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    ]
)

WEBSOCKET_HEADERS = frozenset(
    [
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
        "content-length",
    ]
)


def filter_headers(headers, excluded=HOP_BY_HOP_HEADERS) -> CIMultiDict:
    """Copy headers, dropping hop-by-hop ones and those named in Connection."""
    connection_tokens = {
        token.strip().lower() for token in headers.get("Connection", "").split(",") if token.strip()
    }
    filtered = CIMultiDict()
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in excluded or lowered in connection_tokens:
            continue
        filtered.add(name, value)
    return filtered


class BranchProxy:
    """Forwards HTTP requests and WebSockets to one worker's Unix socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = None):
        """Initialize the proxy.

        Args:
            socket_path: Socket the branch's application listens on
            timeout: Seconds to wait for upstream data before giving up
        """
        self.socket_path = socket_path
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.UnixConnector(path=self.socket_path),
                timeout=aiohttp.ClientTimeout(total=None, sock_read=self.timeout),
                auto_decompress=False,
                cookie_jar=aiohttp.DummyCookieJar(),
            )
        return self._session

    @staticmethod
    def _upstream_url(request: web.BaseRequest) -> str:
        # The host part is ignored by the Unix connector
        return f"http://localhost{request.raw_path}"

    @staticmethod
    def _forwarded_headers(request: web.BaseRequest, headers: CIMultiDict) -> CIMultiDict:
        peer = request.remote or ""
        previous = request.headers.get("X-Forwarded-For")
        headers["X-Forwarded-For"] = f"{previous}, {peer}" if previous else peer
        headers["X-Forwarded-Host"] = request.host
        headers["X-Forwarded-Proto"] = request.scheme
        return headers

    async def forward(self, request: web.BaseRequest) -> web.StreamResponse:
        """Proxy one HTTP request and stream the answer back.

        Raises:
            aiohttp.ClientError: If the worker cannot be reached
            asyncio.TimeoutError: If the worker sends nothing for `timeout` seconds
        """
        session = self._get_session()
        headers = self._forwarded_headers(request, filter_headers(request.headers))
        headers.popall("Content-Length", None)
        data = request.content if request.body_exists else None

        async with session.request(
            request.method,
            self._upstream_url(request),
            headers=headers,
            data=data,
            allow_redirects=False,
        ) as upstream:
            response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
            for name, value in filter_headers(upstream.headers).items():
                response.headers.add(name, value)
            await response.prepare(request)
            try:
                async for chunk in upstream.content.iter_any():
                    await response.write(chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                # Headers are already sent, all we can do is cut the body short
                logger.warning(f"Upstream {self.socket_path} failed mid-response: {e}")
                return response
            await response.write_eof()
            return response

    async def forward_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Bridge a WebSocket between the client and the worker."""
        session = self._get_session()
        protocols = [
            p.strip() for p in request.headers.get("Sec-WebSocket-Protocol", "").split(",") if p.strip()
        ]
        excluded = HOP_BY_HOP_HEADERS | WEBSOCKET_HEADERS
        headers = self._forwarded_headers(request, filter_headers(request.headers, excluded))

        async with session.ws_connect(
            self._upstream_url(request),
            headers=headers,
            protocols=protocols,
            autoping=True,
        ) as upstream:
            downstream = web.WebSocketResponse(protocols=[upstream.protocol] if upstream.protocol else ())
            await downstream.prepare(request)

            pumps = [
                asyncio.ensure_future(self._pump(downstream, upstream)),
                asyncio.ensure_future(self._pump(upstream, downstream)),
            ]
            try:
                await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for pump in pumps:
                    pump.cancel()
                await asyncio.gather(*pumps, return_exceptions=True)
                await upstream.close()
                await downstream.close()
            return downstream

    @staticmethod
    async def _pump(source, target) -> None:
        async for message in source:
            if message.type == aiohttp.WSMsgType.TEXT:
                await target.send_str(message.data)
            elif message.type == aiohttp.WSMsgType.BINARY:
                await target.send_bytes(message.data)
            elif message.type == aiohttp.WSMsgType.ERROR:
                logger.debug(f"WebSocket error: {source.exception()}")
                break

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
