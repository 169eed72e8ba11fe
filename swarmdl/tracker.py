"""Async HTTP tracker communication.

This module announces the client to a BitTorrent tracker and parses the
peer list it returns, in either the compact (6 bytes per peer) or the
dictionary form.
"""

from __future__ import annotations

import asyncio
import ipaddress
import secrets
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from swarmdl import __version__
from swarmdl.bencode import BencodeDecoder
from swarmdl.config import get_config
from swarmdl.exceptions import BencodeError, TrackerError
from swarmdl.logging_config import get_logger
from swarmdl.models import PeerInfo, TorrentInfo, TrackerConfig, TrackerEvent, TrackerResponse
from swarmdl.utils.backoff import ExponentialBackoff

PEER_ID_PREFIX = b"-SD0100-"
COMPACT_PEER_SIZE = 6


def generate_peer_id(prefix: bytes = PEER_ID_PREFIX) -> bytes:
    """Generate a 20-byte peer id: the client prefix plus random bytes."""
    return prefix + secrets.token_bytes(20 - len(prefix))


@dataclass
class TrackerSession:
    """Announce bookkeeping for one tracker URL."""

    url: str
    last_announce: float = 0.0
    interval: int = 1800
    min_interval: int | None = None
    tracker_id: str | None = None
    failure_count: int = 0
    last_failure: float = 0.0


class AsyncTrackerClient:
    """Async client for HTTP(S) BitTorrent trackers."""

    def __init__(
        self,
        peer_id: bytes | None = None,
        port: int | None = None,
        config: TrackerConfig | None = None,
    ):
        """Initialize the tracker client.

        Args:
            peer_id: 20-byte peer id, generated once when omitted
            port: Port reported to the tracker, defaults to the listen port
            config: Tracker settings, defaults to the global config
        """
        global_config = get_config()
        self.config = config or global_config.tracker
        self.port = port or global_config.network.listen_port
        self.peer_id = peer_id or generate_peer_id()
        self.user_agent = f"swarmdl/{__version__}"

        self.session: aiohttp.ClientSession | None = None
        self.sessions: dict[str, TrackerSession] = {}
        self.backoff = ExponentialBackoff(
            base_delay=self.config.backoff_base,
            max_delay=self.config.backoff_max,
        )

        self.logger = get_logger(__name__)

    async def start(self) -> None:
        """Create the HTTP session."""
        if self.session is not None:
            return
        timeout = aiohttp.ClientTimeout(
            total=self.config.timeout,
            connect=self.config.timeout,
        )
        connector = aiohttp.TCPConnector(
            limit=10,
            ttl_dns_cache=300,
            use_dns_cache=True,
        )
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            headers={"User-Agent": self.user_agent},
        )
        self.logger.debug("Tracker client started")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self.session is not None:
            await self.session.close()
            self.session = None
        self.logger.debug("Tracker client stopped")

    async def announce(
        self,
        torrent: TorrentInfo,
        event: TrackerEvent | str = TrackerEvent.EMPTY,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
        url: str | None = None,
    ) -> TrackerResponse:
        """Announce to the tracker once and return its peer list.

        Args:
            torrent: Torrent being announced
            event: started, completed, stopped or empty for a regular update
            uploaded: Bytes uploaded so far
            downloaded: Bytes downloaded so far
            left: Bytes still missing, defaults to the total length
            url: Tracker URL, defaults to the torrent's announce URL

        Returns:
            TrackerResponse with peers and the announce interval

        Raises:
            TrackerError: If the request fails or the tracker reports failure
        """
        if self.session is None:
            msg = "Tracker client not started"
            raise TrackerError(msg)

        url = url or torrent.announce
        if left is None:
            left = torrent.total_length

        tracker_url = self._build_tracker_url(
            url,
            torrent.info_hash,
            uploaded,
            downloaded,
            left,
            TrackerEvent(event).value,
        )
        try:
            response_data = await self._make_request_async(tracker_url)
            response = self._parse_response_async(response_data)
        except TrackerError:
            self._handle_tracker_failure(url)
            raise

        self._update_tracker_session(url, response)
        if response.warning_message:
            self.logger.warning("Tracker %s warning: %s", url, response.warning_message)
        self.logger.debug("Announce to %s returned %d peers", url, len(response.peers))
        return response

    async def announce_with_retry(
        self,
        torrent: TorrentInfo,
        event: TrackerEvent | str = TrackerEvent.EMPTY,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
        require_peers: bool = False,
    ) -> TrackerResponse:
        """Announce, retrying failures with exponential backoff.

        Attempts rotate through the announce URL and any announce-list
        tiers. When ``require_peers`` is set, a response without peers
        counts as a failed attempt.

        Raises:
            TrackerError: The last failure once ``max_retries`` attempts are used
        """
        urls = self.tracker_urls(torrent)
        attempts = self.config.max_retries
        last_error = TrackerError("No announce attempt made")

        for attempt in range(attempts):
            url = urls[attempt % len(urls)]
            try:
                response = await self.announce(
                    torrent,
                    event=event,
                    uploaded=uploaded,
                    downloaded=downloaded,
                    left=left,
                    url=url,
                )
                if require_peers and not response.peers:
                    msg = "Tracker returned no peers"
                    raise TrackerError(msg, details={"url": url})
                return response
            except TrackerError as e:
                last_error = e
                self.logger.info(
                    "Announce attempt %d/%d to %s failed: %s",
                    attempt + 1,
                    attempts,
                    url,
                    e,
                )
            if attempt + 1 < attempts:
                await asyncio.sleep(self.backoff.next_delay(attempt))

        raise last_error

    def tracker_urls(self, torrent: TorrentInfo) -> list[str]:
        """HTTP(S) tracker URLs in announce order, without duplicates."""
        urls = [torrent.announce]
        for tier in torrent.announce_list or []:
            urls.extend(tier)
        seen: set[str] = set()
        result = []
        for url in urls:
            if url in seen or not url.startswith(("http://", "https://")):
                continue
            seen.add(url)
            result.append(url)
        return result or [torrent.announce]

    def _build_tracker_url(
        self,
        base_url: str,
        info_hash: bytes,
        uploaded: int,
        downloaded: int,
        left: int,
        event: str,
    ) -> str:
        """Build the announce URL with all query parameters.

        Binary values are percent-encoded byte by byte; urlencode would
        re-escape them.
        """
        params = [
            ("info_hash", urllib.parse.quote_from_bytes(info_hash, safe="")),
            ("peer_id", urllib.parse.quote_from_bytes(self.peer_id, safe="")),
            ("port", str(self.port)),
            ("uploaded", str(uploaded)),
            ("downloaded", str(downloaded)),
            ("left", str(left)),
            ("compact", "1"),
            ("numwant", str(self.config.numwant)),
        ]
        if event:
            params.append(("event", event))
        session = self.sessions.get(base_url)
        if session is not None and session.tracker_id:
            params.append(("trackerid", urllib.parse.quote(session.tracker_id, safe="")))

        separator = "&" if "?" in base_url else "?"
        query_string = "&".join(f"{key}={value}" for key, value in params)
        return f"{base_url}{separator}{query_string}"

    async def _make_request_async(self, url: str) -> bytes:
        """Make the HTTP GET request."""
        if self.session is None:
            msg = "HTTP session not initialized"
            raise TrackerError(msg)
        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerError(msg)
                return await response.read()
        except aiohttp.ClientError as e:
            msg = f"Network error: {e}"
            raise TrackerError(msg) from e
        except asyncio.TimeoutError as e:
            msg = "Tracker request timed out"
            raise TrackerError(msg) from e

    def _update_tracker_session(self, url: str, response: TrackerResponse) -> None:
        session = self.sessions.setdefault(url, TrackerSession(url=url))
        session.last_announce = time.time()
        session.interval = response.interval
        session.min_interval = response.min_interval
        if response.tracker_id:
            session.tracker_id = response.tracker_id
        session.failure_count = 0

    def _handle_tracker_failure(self, url: str) -> None:
        session = self.sessions.setdefault(url, TrackerSession(url=url))
        session.failure_count += 1
        session.last_failure = time.time()

    def _parse_response_async(self, response_data: bytes) -> TrackerResponse:
        """Parse a bencoded tracker response.

        Raises:
            TrackerError: On decode failure or a ``failure reason`` reply
        """
        try:
            decoded = BencodeDecoder(response_data).decode()
        except BencodeError as e:
            msg = f"Failed to parse tracker response: {e}"
            raise TrackerError(msg) from e

        if not isinstance(decoded, dict):
            msg = "Tracker response is not a dictionary"
            raise TrackerError(msg)

        if b"failure reason" in decoded:
            reason = _as_text(decoded[b"failure reason"]) or "unknown"
            msg = f"Tracker failure: {reason}"
            raise TrackerError(msg, details={"reason": reason})

        interval = decoded.get(b"interval")
        if not isinstance(interval, int) or interval < 0:
            interval = self.config.default_interval
        min_interval = decoded.get(b"min interval")
        if not isinstance(min_interval, int) or min_interval < 0:
            min_interval = None

        peers_data = decoded.get(b"peers", b"")
        if isinstance(peers_data, bytes):
            peers = self._parse_compact_peers(peers_data)
        elif isinstance(peers_data, list):
            peers = self._parse_dict_peers(peers_data)
        else:
            msg = "Invalid peers field in tracker response"
            raise TrackerError(msg)

        return TrackerResponse(
            interval=interval,
            min_interval=min_interval,
            peers=peers,
            complete=_as_count(decoded.get(b"complete")),
            incomplete=_as_count(decoded.get(b"incomplete")),
            tracker_id=_as_text(decoded.get(b"tracker id")),
            warning_message=_as_text(decoded.get(b"warning message")),
        )

    def _parse_compact_peers(self, peers_data: bytes) -> list[PeerInfo]:
        """Parse compact peer format.

        Each peer is 4 bytes of IPv4 address followed by a 2-byte port,
        both in network byte order.

        Raises:
            TrackerError: If the data length is not a multiple of 6
        """
        if len(peers_data) % COMPACT_PEER_SIZE != 0:
            msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
            raise TrackerError(msg)

        peers = []
        for start in range(0, len(peers_data), COMPACT_PEER_SIZE):
            ip = str(ipaddress.IPv4Address(peers_data[start : start + 4]))
            port = int.from_bytes(peers_data[start + 4 : start + 6], byteorder="big")
            if port == 0:
                continue
            peers.append(PeerInfo(ip=ip, port=port))
        return peers

    def _parse_dict_peers(self, peers_data: list[Any]) -> list[PeerInfo]:
        peers = []
        for entry in peers_data:
            if not isinstance(entry, dict):
                continue
            try:
                peer_id = entry.get(b"peer id")
                peers.append(
                    PeerInfo(
                        ip=_as_text(entry.get(b"ip")) or "",
                        port=entry.get(b"port"),
                        peer_id=peer_id if isinstance(peer_id, bytes) else None,
                    ),
                )
            except PydanticValidationError:
                self.logger.debug("Skipping invalid peer entry %r", entry)
        return peers


def _as_text(value: Any) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return None


def _as_count(value: Any) -> int | None:
    if isinstance(value, int) and value >= 0:
        return value
    return None
