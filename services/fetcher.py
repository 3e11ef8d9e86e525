"""Source fetching for the asset pipeline.

Three kinds of source converge on the same ``FetchResult``:

* HTTPS URLs, downloaded with SSRF protection. Every hostname is resolved up
  front, each address is checked against non-public ranges, and the request is
  pinned to a validated IP (Host header and SNI preserved) so a DNS rebind
  between check and connect cannot redirect us inward. Redirects are followed
  manually and every hop goes through the same checks.
* ``data:`` URIs, base64 or percent-encoded.
* Raw byte buffers (already-uploaded files).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import ipaddress
import logging
import socket
import time
from typing import Dict, List, NamedTuple, Optional, Set, Tuple, Union
from urllib.parse import unquote_to_bytes, urljoin, urlparse

import httpx

from config import FetchSettings
from services.errors import (
    FetchFailed,
    ForbiddenDestination,
    InvalidSource,
    MalformedInput,
    PayloadTooLarge,
)
from logging_utils import redact_url
from services.mime_utils import normalize_mime, sniff_content_type

logger = logging.getLogger(__name__)


class FetchResult(NamedTuple):
    data: bytes
    content_type: str


class Fetcher:
    """Fetch image bytes from URLs, data URIs and in-memory buffers."""

    CHUNK_SIZE = 64 * 1024
    _REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
    _DEFAULT_PORTS: Dict[str, int] = {"http": 80, "https": 443}

    def __init__(
        self,
        *,
        settings: FetchSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._denied_networks = self._build_denied_networks()

    async def fetch(self, source: Union[str, bytes, bytearray], content_type: Optional[str] = None) -> FetchResult:
        """Dispatch on the kind of source descriptor."""
        if isinstance(source, (bytes, bytearray)):
            return self.from_bytes(bytes(source), content_type)
        if not isinstance(source, str):
            raise InvalidSource("Unsupported source descriptor")
        stripped = source.strip()
        if stripped[:5].lower() == "data:":
            return self.decode_data_uri(stripped)
        return await self.fetch_url(stripped)

    # ------------------------------------------------------------------
    # Raw bytes
    # ------------------------------------------------------------------

    def from_bytes(self, data: bytes, declared_content_type: Optional[str] = None) -> FetchResult:
        if not data:
            raise MalformedInput("Uploaded file is empty")
        if len(data) > self.settings.max_bytes:
            raise PayloadTooLarge(f"File exceeds maximum size of {self.settings.max_bytes} bytes")
        content_type = normalize_mime(declared_content_type)
        if not content_type or content_type == "application/octet-stream":
            content_type = sniff_content_type(data)
        return FetchResult(data, content_type)

    # ------------------------------------------------------------------
    # Data URIs
    # ------------------------------------------------------------------

    def decode_data_uri(self, data_uri: str) -> FetchResult:
        """Parse ``data:[<mediatype>][;base64],<data>``."""
        if not data_uri or data_uri[:5].lower() != "data:":
            raise MalformedInput("Invalid data URI format")
        content = data_uri[5:]
        header, separator, payload = content.partition(",")
        if not separator:
            raise MalformedInput("Invalid data URI: missing comma separator")

        params = [part.strip() for part in header.split(";")]
        media_type = params[0].lower() if params and params[0] else "text/plain"
        is_base64 = any(part.lower() == "base64" for part in params[1:])

        if is_base64:
            data = self._decode_base64_payload(payload)
        else:
            if len(payload) > self.settings.max_bytes * 3:
                raise PayloadTooLarge(f"Data URI exceeds maximum size of {self.settings.max_bytes} bytes")
            data = unquote_to_bytes(payload)
            if len(data) > self.settings.max_bytes:
                raise PayloadTooLarge(f"Data URI exceeds maximum size of {self.settings.max_bytes} bytes")

        if not data:
            raise MalformedInput("Data URI payload is empty")
        return FetchResult(data, normalize_mime(media_type) or "text/plain")

    def _decode_base64_payload(self, payload: str) -> bytes:
        # Estimate the decoded size before allocating anything
        cleaned = "".join(unquote_to_bytes(payload).decode("ascii", errors="replace").split())
        estimated_size = len(cleaned) * 3 // 4
        if estimated_size > self.settings.max_bytes:
            raise PayloadTooLarge(
                f"Data URI too large: estimated {estimated_size} bytes exceeds limit of {self.settings.max_bytes} bytes"
            )
        try:
            return base64.b64decode(cleaned, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedInput("Invalid base64 payload in data URI") from exc

    # ------------------------------------------------------------------
    # Remote URLs
    # ------------------------------------------------------------------

    async def fetch_url(self, url: str) -> FetchResult:
        normalized_url = (url or "").strip()
        if not normalized_url:
            raise InvalidSource("URL is required")
        # Structural checks run before the deadline starts
        self._validate_url_structure(normalized_url)
        try:
            return await asyncio.wait_for(
                self._download(normalized_url),
                timeout=self.settings.overall_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise FetchFailed(
                f"Fetching {redact_url(normalized_url)} exceeded {self.settings.overall_timeout_seconds:g}s"
            ) from exc

    async def _download(self, url: str) -> FetchResult:
        headers = {"User-Agent": self.settings.user_agent, "Accept": "image/*,*/*;q=0.8"}
        timeout = httpx.Timeout(
            timeout=self.settings.overall_timeout_seconds,
            connect=self.settings.connect_timeout_seconds,
            read=self.settings.read_timeout_seconds,
            write=self.settings.read_timeout_seconds,
            pool=self.settings.connect_timeout_seconds,
        )
        client_kwargs = {
            "timeout": timeout,
            "follow_redirects": False,
            "trust_env": False,
            "limits": httpx.Limits(max_connections=10, max_keepalive_connections=0, keepalive_expiry=0),
        }
        if self._transport is not None:
            client_kwargs["transport"] = self._transport

        async with httpx.AsyncClient(**client_kwargs) as client:
            current_url = url
            redirects = 0
            while True:
                parsed = self._validate_url_structure(current_url)
                port = self._determine_port(parsed.scheme.lower(), parsed)
                response = await self._send_pinned_request(
                    client,
                    url=current_url,
                    hostname=parsed.hostname,
                    port=port,
                    headers=headers,
                )

                if response.status_code in self._REDIRECT_STATUS_CODES:
                    location = response.headers.get("location")
                    await response.aclose()
                    if not location:
                        raise FetchFailed("Redirect response missing Location header")
                    redirects += 1
                    if redirects > self.settings.max_redirects:
                        raise FetchFailed("Too many redirects while fetching image")
                    try:
                        current_url = urljoin(current_url, location)
                    except ValueError as exc:
                        raise FetchFailed("Redirect Location header is malformed") from exc
                    logger.debug("Following redirect to %s", redact_url(current_url))
                    continue

                try:
                    if response.status_code != 200:
                        raise FetchFailed(f"URL responded with HTTP {response.status_code}")

                    declared_size = self._extract_declared_size(response)
                    if declared_size is not None and declared_size > self.settings.max_bytes:
                        raise PayloadTooLarge(
                            f"Remote file too large: {declared_size} bytes (max {self.settings.max_bytes})"
                        )

                    data = await self._read_body(response)
                finally:
                    await response.aclose()

                declared_mime = normalize_mime(response.headers.get("content-type"))
                content_type = declared_mime or sniff_content_type(data)
                logger.debug("Fetched %d bytes (%s) from %s", len(data), content_type, redact_url(current_url))
                return FetchResult(data, content_type)

    async def _read_body(self, response: httpx.Response) -> bytes:
        """Read the body under the byte cap and the minimum-rate floor."""
        max_bytes = self.settings.max_bytes
        min_rate = self.settings.min_bytes_per_second
        window_seconds = max(self.settings.min_rate_window_seconds, 1)
        window_start = time.monotonic()
        window_bytes = 0
        buffer = bytearray()

        try:
            async for chunk in response.aiter_bytes(self.CHUNK_SIZE):
                if not chunk:
                    continue
                if len(buffer) + len(chunk) > max_bytes:
                    raise PayloadTooLarge(f"Remote file exceeds maximum size of {max_bytes} bytes")
                buffer.extend(chunk)
                if min_rate:
                    window_bytes += len(chunk)
                    now = time.monotonic()
                    elapsed = now - window_start
                    if elapsed >= window_seconds:
                        if window_bytes / max(elapsed, 1e-6) < min_rate:
                            raise FetchFailed("Download speed below safety threshold")
                        window_start = now
                        window_bytes = 0
        except httpx.HTTPError as exc:
            raise FetchFailed(f"Failed to read response body: {exc}") from exc

        if not buffer:
            raise FetchFailed("Remote server returned an empty body")
        return bytes(buffer)

    def _build_pinned_request(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        hostname: str,
        ip_address: str,
        headers: Dict[str, str],
    ) -> httpx.Request:
        """Build a request pinned to a resolved IP while preserving host/SNI."""
        try:
            url_obj = httpx.URL(url)
            pinned_url = url_obj.copy_with(host=ip_address)
            request = client.build_request("GET", pinned_url, headers=headers)
        except (httpx.InvalidURL, ValueError) as exc:
            raise InvalidSource(f"URL is malformed: {exc}") from exc
        request.headers["host"] = url_obj.netloc.decode("ascii")
        request.extensions["sni_hostname"] = hostname
        return request

    async def _send_pinned_request(
        self,
        client: httpx.AsyncClient,
        *,
        url: str,
        hostname: str,
        port: int,
        headers: Dict[str, str],
    ) -> httpx.Response:
        """Send a GET pinned to the validated addresses, trying each in turn."""
        resolved_ips = await self._resolve_and_validate_host(hostname, port)
        last_exc: Optional[Exception] = None
        for ip_address in resolved_ips:
            request = self._build_pinned_request(
                client,
                url,
                hostname=hostname,
                ip_address=ip_address,
                headers=headers,
            )
            try:
                return await client.send(request, stream=True)
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                last_exc = exc
                continue
            except httpx.HTTPError as exc:
                raise FetchFailed(f"Failed to fetch URL: {exc}") from exc
        if last_exc:
            raise FetchFailed("Unable to connect to resolved host") from last_exc
        raise FetchFailed("Unable to connect to resolved host")

    def _validate_url_structure(self, url: str):
        try:
            parsed = urlparse(url)
            hostname = parsed.hostname
        except ValueError as exc:
            raise InvalidSource(f"URL is malformed: {exc}") from exc
        scheme = parsed.scheme.lower()
        allowed_schemes = {value.lower() for value in self.settings.allowed_schemes}
        if scheme not in allowed_schemes or scheme not in self._DEFAULT_PORTS:
            raise InvalidSource("Only HTTPS URLs are allowed")
        if parsed.username or parsed.password:
            raise InvalidSource("URL must not include embedded credentials")
        if not parsed.netloc:
            raise InvalidSource("URL must include a hostname")
        if not hostname:
            raise InvalidSource("Unable to determine hostname from URL")
        self._validate_hostname_format(hostname)
        if self._hostname_blocked(hostname):
            raise ForbiddenDestination("URL hostname is not permitted")
        return parsed

    def _hostname_blocked(self, hostname: str) -> bool:
        host = hostname.lower().rstrip(".")
        blocked = {entry.lower() for entry in self.settings.blocked_hostnames}
        return any(host == entry or host.endswith(f".{entry}") for entry in blocked)

    def _validate_hostname_format(self, hostname: str) -> None:
        cleaned = hostname.strip()
        if hostname != cleaned:
            raise InvalidSource("Hostname contains leading or trailing whitespace")
        if len(cleaned) > 253:
            raise InvalidSource("Hostname exceeds maximum length")
        if any(ord(ch) < 32 for ch in cleaned):
            raise InvalidSource("Hostname contains control characters")
        try:
            cleaned.encode("ascii")
        except UnicodeEncodeError as exc:
            raise InvalidSource("Hostname must be ASCII") from exc
        if self._ip_literal(cleaned) is not None:
            return
        if set(cleaned) <= set("0123456789."):
            raise InvalidSource("Hostname must be a valid IPv4 address")
        labels = cleaned.rstrip(".").split(".")
        for label in labels:
            if not label:
                raise InvalidSource("Hostname contains empty labels")
            if label.startswith("-") or label.endswith("-"):
                raise InvalidSource("Hostname labels must not start or end with '-'")
            for ch in label.lower():
                if ch not in "abcdefghijklmnopqrstuvwxyz0123456789-_":
                    raise InvalidSource("Hostname contains invalid characters")

    @staticmethod
    def _ip_literal(hostname: str) -> Optional[ipaddress._BaseAddress]:
        try:
            return ipaddress.ip_address(hostname)
        except ValueError:
            return None

    def _determine_port(self, scheme: str, parsed) -> int:
        try:
            port = parsed.port
        except ValueError as exc:
            raise InvalidSource("URL port is invalid") from exc
        expected = self._DEFAULT_PORTS[scheme]
        if port is None:
            return expected
        if port != expected:
            raise InvalidSource("URL port is not permitted")
        return port

    async def _lookup(self, hostname: str, port: int) -> List[Tuple[int, str]]:
        loop = asyncio.get_running_loop()
        try:
            addr_info = await loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            raise FetchFailed(f"Unable to resolve hostname {hostname}") from exc
        return [(family, sockaddr[0]) for family, _, _, _, sockaddr in addr_info]

    async def _resolve_and_validate_host(self, hostname: str, port: int) -> List[str]:
        """Resolve the hostname and reject it if any address is non-public."""
        literal = self._ip_literal(hostname)
        if literal is not None:
            self._validate_ip_address(literal)
            return [str(literal)]

        addresses: List[str] = []
        seen: Set[str] = set()
        for _, ip_literal in await self._lookup(hostname, port):
            # Scoped IPv6 results carry a %zone suffix
            ip_literal = ip_literal.split("%", 1)[0]
            if ip_literal in seen:
                continue
            try:
                ip_obj = ipaddress.ip_address(ip_literal)
            except ValueError as exc:
                raise ForbiddenDestination("Resolved address is invalid") from exc
            self._validate_ip_address(ip_obj)
            addresses.append(str(ip_obj))
            seen.add(ip_literal)
        if not addresses:
            raise FetchFailed(f"Unable to resolve hostname {hostname}")
        return addresses

    def _validate_ip_address(self, ip_obj: ipaddress._BaseAddress) -> None:
        if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped is not None:
            ip_obj = ip_obj.ipv4_mapped
        for network in self._denied_networks:
            if ip_obj in network:
                raise ForbiddenDestination(f"Connection to private IP address is not allowed: {ip_obj}")
        if not getattr(ip_obj, "is_global", False):
            raise ForbiddenDestination(f"Address is not routable on the public internet: {ip_obj}")

    def _build_denied_networks(self) -> Tuple[ipaddress._BaseNetwork, ...]:
        networks = [
            ipaddress.ip_network("0.0.0.0/8"),
            ipaddress.ip_network("10.0.0.0/8"),
            ipaddress.ip_network("100.64.0.0/10"),
            ipaddress.ip_network("127.0.0.0/8"),
            ipaddress.ip_network("169.254.0.0/16"),
            ipaddress.ip_network("172.16.0.0/12"),
            ipaddress.ip_network("192.0.0.0/24"),
            ipaddress.ip_network("192.0.2.0/24"),
            ipaddress.ip_network("192.168.0.0/16"),
            ipaddress.ip_network("198.18.0.0/15"),
            ipaddress.ip_network("198.51.100.0/24"),
            ipaddress.ip_network("203.0.113.0/24"),
            ipaddress.ip_network("224.0.0.0/4"),
            ipaddress.ip_network("240.0.0.0/4"),
            ipaddress.ip_network("255.255.255.255/32"),
            ipaddress.ip_network("::/128"),
            ipaddress.ip_network("::1/128"),
            ipaddress.ip_network("fe80::/10"),
            ipaddress.ip_network("fc00::/7"),
            ipaddress.ip_network("ff00::/8"),
            ipaddress.ip_network("2001:db8::/32"),
        ]
        return tuple(networks)

    def _extract_declared_size(self, response: httpx.Response) -> Optional[int]:
        header = response.headers.get("Content-Length")
        if header is None:
            return None
        value = header.strip()
        if not value:
            return None
        try:
            size = int(value)
        except ValueError as exc:
            raise FetchFailed("Invalid Content-Length header") from exc
        if size < 0:
            raise FetchFailed("Content-Length must be non-negative")
        return size
