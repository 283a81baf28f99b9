#!/usr/bin/env python3
"""
HTTP fetcher for feed payloads.

This module retrieves raw feed bytes over HTTP(S). It does not interpret the
content type or character set; the decoder owns that. Every failure surfaces
as a FetchError carrying the URI and, for HTTP errors, the status and body.
"""

from asyncio import TimeoutError
from typing import List, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from config import config, get_logger
from errors import FetchError
from telemetry import trace_span
from utils import validate_url

# Module-specific logger
logger = get_logger("fetcher")


class FeedFetcher:
    """Owns one aiohttp session shared by every fetch in a run."""

    def __init__(self, timeout: Optional[int] = None, user_agent: Optional[str] = None,
                 max_redirects: Optional[int] = None) -> None:
        self.timeout = int(timeout or config.HTTP_TIMEOUT)
        self.user_agent = user_agent or config.USER_AGENT
        self.max_redirects = config.MAX_REDIRECTS if max_redirects is None else int(max_redirects)
        self.session: Optional[ClientSession] = None

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.user_agent},
            )
            logger.debug(f"FeedFetcher initialized (timeout={self.timeout}s)")

    async def close(self) -> None:
        """Close the HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
        logger.debug("FeedFetcher closed")

    async def __aenter__(self) -> "FeedFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, uri: {"http.url": uri},
    )
    async def fetch(self, uri: str) -> bytes:
        """Retrieve the body at uri.

        Non-2xx responses still have their body read so it can be kept for
        diagnostics; it travels on FetchError.payload.
        """
        if not validate_url(uri):
            raise FetchError(f"invalid feed URI: {uri!r}", uri=uri)
        if self.session is None or self.session.closed:
            await self.initialize()

        # aiohttp reads max_redirects=0 as "no limit"
        if self.max_redirects > 0:
            request_kwargs = {'max_redirects': self.max_redirects}
        else:
            request_kwargs = {'allow_redirects': False}

        try:
            async with self.session.get(uri, **request_kwargs) as response:
                content = await response.read()
                if not 200 <= response.status < 300:
                    logger.debug(f"HTTP {response.status} from {uri} ({len(content)} bytes)")
                    raise FetchError(
                        f"HTTP {response.status} fetching {uri}",
                        uri=uri,
                        status=response.status,
                        payload=content,
                    )
                logger.debug(f"Fetched {len(content)} bytes from {uri}")
                return content
        except TimeoutError as e:
            raise FetchError(f"timed out after {self.timeout}s fetching {uri}", uri=uri) from e
        except ClientError as e:
            raise FetchError(f"error fetching {uri}: {self._format_client_error(e)}", uri=uri) from e

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
