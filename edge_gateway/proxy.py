"""
Edge Gateway - request handler

Runs every inbound request through a fixed sequence of checks and then
forwards it to the single upstream origin:

    IP denylist -> region denylist -> path resolution -> rate limit -> forward

Every step before "forward" can end the request (403, 403, 429) and none
of them contacts upstream. Upstream transport failures become a 502; there
are no retries.

Architecture:
    Internet -> hosting edge (trusted IP/region headers) -> Edge Gateway -> Upstream
                                                            ^^^^^^^^^^^^
                                                            (this file)
"""

from __future__ import annotations

import string
import time
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Callable, Optional, Sequence
from urllib.parse import quote

import requests
import urllib3
from requests.structures import CaseInsensitiveDict
from werkzeug.datastructures import Headers

from edge_gateway.config import GatewayConfig
from edge_gateway.events import EventLog
from edge_gateway.ratelimit import RateLimiter, build_rate_limiter
from edge_gateway.store import MemoryStore, RateLimitStore, RedisStore

# Headers that describe a single connection, never relayed across the proxy
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Recomputed by the HTTP client for the upstream connection
REQUEST_SKIP = HOP_BY_HOP | {"host", "content-length"}

PROXY_MARKER_HEADER = "X-Proxy-By"

# Characters left unescaped when re-encoding the routed path
_PATH_SAFE = "/:@!$&'()*+,;="

# Every printable ASCII character besides the ones quote() never escapes
_QUERY_SAFE = string.punctuation


# =============================================================================
# Request / Response values
# =============================================================================

@dataclass(frozen=True)
class EdgeRequest:
    """Inbound request, detached from the web framework."""

    method: str
    path_segments: tuple = ()
    query_string: bytes = b""
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""


@dataclass
class EdgeResponse:
    status: int
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""

    @classmethod
    def text(cls, status: int, body: str, headers: Optional[dict] = None) -> "EdgeResponse":
        h = Headers({"Content-Type": "text/plain; charset=utf-8"})
        for name, value in (headers or {}).items():
            h[name] = value
        return cls(status=status, headers=h, body=body.encode("utf-8"))


# =============================================================================
# Denylist
# =============================================================================

def deny_reason(
    ip: str,
    region: str,
    blocked_ips: frozenset,
    blocked_regions: frozenset,
) -> Optional[str]:
    """Return "ip" or "region" for the first denylist that matches, else None."""
    if ip in blocked_ips:
        return "ip"
    if region in blocked_regions:
        return "region"
    return None


# =============================================================================
# Path resolution
# =============================================================================

def resolve_path(segments: Sequence[str]) -> str:
    """Join router-supplied path segments into an absolute path."""
    if not segments:
        return "/"
    return "/" + "/".join(segments)


def build_target_url(origin: str, path: str, query_string: bytes = b"") -> str:
    """Upstream origin + routed path, with the inbound query copied as-is.

    Printable ASCII in the query is kept byte for byte, existing escapes
    included. Only bytes a request target cannot carry (space, controls,
    non-ASCII) are percent-encoded, once.
    """
    url = origin.rstrip("/") + quote(path, safe=_PATH_SAFE)
    if query_string:
        url += "?" + quote(query_string, safe=_QUERY_SAFE)
    return url


# =============================================================================
# Forwarding
# =============================================================================

def build_outbound_headers(inbound: Headers, client_ip: str) -> CaseInsensitiveDict:
    """Fresh header collection for the upstream request.

    Copies the inbound headers (minus connection-level ones) and then sets
    the proxy identification headers, overwriting whatever the client sent.
    """
    outbound = CaseInsensitiveDict()
    for name, value in inbound.items():
        if name.lower() in REQUEST_SKIP:
            continue
        if name in outbound:
            outbound[name] = f"{outbound[name]}, {value}"
        else:
            outbound[name] = value

    outbound["X-Forwarded-For"] = client_ip
    outbound["X-Real-IP"] = client_ip
    outbound["X-Forwarded-Proto"] = "https"
    return outbound


class Forwarder:
    """Sends requests to the fixed upstream and captures the final response.

    Redirects are followed here, so callers only ever see the response at
    the end of the redirect chain.

    The forwarder takes over the session it is given: its default headers
    are cleared and its cookie jar is set to refuse every cookie. Pass a
    session dedicated to the upstream.
    """

    def __init__(
        self,
        origin: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.origin = origin
        self.timeout = timeout
        self.session = session or requests.Session()
        # Outbound requests carry only what the client sent plus our overrides
        self.session.headers.clear()
        # One session serves every client: never store upstream cookies
        self.session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

    def forward(self, request: EdgeRequest, path: str, client_ip: str) -> EdgeResponse:
        """Relay request upstream.

        Raises requests.exceptions.RequestException on transport failure.
        """
        url = build_target_url(self.origin, path, request.query_string)

        prepared = self.session.prepare_request(requests.Request(
            request.method,
            url,
            headers=build_outbound_headers(request.headers, client_ip),
            data=request.body or None,
        ))
        # prepare_url() requotes the target; send exactly what was built
        prepared.url = url

        settings = self.session.merge_environment_settings(url, {}, True, None, None)
        upstream = self.session.send(
            prepared,
            allow_redirects=True,
            timeout=self.timeout,
            **settings,
        )

        # Raw bytes keep the upstream Content-Encoding and Content-Length valid
        try:
            body = upstream.raw.read(decode_content=False)
        except urllib3.exceptions.HTTPError as e:
            raise requests.exceptions.ConnectionError(e, request=upstream.request) from e
        finally:
            upstream.close()

        headers = Headers()
        for name, value in upstream.raw.headers.iteritems():
            if name.lower() not in HOP_BY_HOP:
                headers.add(name, value)

        return EdgeResponse(status=upstream.status_code, headers=headers, body=body)


# =============================================================================
# Gateway
# =============================================================================

class EdgeGateway:
    """The request handler: denylists, rate limit, forward."""

    def __init__(
        self,
        config: GatewayConfig,
        rate_limiter: RateLimiter,
        forwarder: Forwarder,
        events: Optional[EventLog] = None,
    ) -> None:
        self.config = config
        self.rate_limiter = rate_limiter
        self.forwarder = forwarder
        self.events = events or EventLog(enabled=config.log_enabled)

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        store: Optional[RateLimitStore] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> "EdgeGateway":
        """Wire the gateway's collaborators from configuration."""
        events = EventLog(enabled=config.log_enabled)

        if store is None:
            if config.redis_url:
                store = RedisStore.from_url(config.redis_url)
            else:
                store = MemoryStore(clock=clock)

        return cls(
            config=config,
            rate_limiter=build_rate_limiter(config.rate_limit, store, events, clock),
            forwarder=Forwarder(config.upstream_origin, config.upstream_timeout, session),
            events=events,
        )

    def client_identity(self, request: EdgeRequest) -> tuple[str, str]:
        """Client IP and region as reported by the hosting edge."""
        ip = request.headers.get(self.config.client_ip_header) or "unknown"
        region = request.headers.get(self.config.region_header) or "unknown"
        return ip, region

    def handle(self, request: EdgeRequest) -> EdgeResponse:
        ip, region = self.client_identity(request)

        # 1-2. Denylists
        reason = deny_reason(ip, region, self.config.blocked_ips, self.config.blocked_regions)
        if reason == "ip":
            self.events.warn("IP blocked", ip=ip)
            return EdgeResponse.text(403, "Access denied: IP blocked")
        if reason == "region":
            self.events.warn("Region blocked", ip=ip, region=region)
            return EdgeResponse.text(403, "Access denied: Region blocked")

        # 3. Path (already filtered by the router)
        path = resolve_path(request.path_segments)

        # 4. Rate limit
        if not self.rate_limiter.check(ip):
            self.events.warn("Rate limit exceeded", ip=ip, path=path)
            return EdgeResponse.text(
                429,
                "Too Many Requests",
                headers={"Retry-After": str(self.config.rate_limit.window_seconds)},
            )

        # 5-6. Forward and relay
        try:
            response = self.forwarder.forward(request, path, ip)
        except requests.exceptions.RequestException as e:
            self.events.error("Proxy error", ip=ip, path=path, error=str(e))
            return EdgeResponse.text(502, "Bad Gateway")

        response.headers[PROXY_MARKER_HEADER] = self.config.proxy_marker
        self.events.info(
            "Request proxied",
            ip=ip,
            method=request.method,
            path=path,
            status=response.status,
        )
        return response
