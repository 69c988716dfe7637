"""Outbound fetch guard: SSRF-safe URL validation and pinned-address fetching."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_REDIRECTS = 3
DEFAULT_ALLOWED_PORTS: tuple[int, ...] = (80, 443)
RATE_LIMIT_CAPACITY = 50
RATE_LIMIT_REFILL_PER_SECOND = 10.0

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",  # noqa: S104
        "::1",
        "[::1]",
        "metadata.google.internal",
        "169.254.169.254",
    },
)
FORBIDDEN_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "224.0.0.0/4",
        "240.0.0.0/4",
    )
)
FORBIDDEN_IPV6_NETWORKS = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
        "ff00::/8",
        "2001:db8::/32",
        "2002::/16",
        "2001::/32",
    )
)
_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
_DEFAULT_PORTS = {"http": 80, "https": 443}
_CREDENTIAL_HEADERS = frozenset({"authorization", "cookie", "proxy-authorization"})

Resolver = Callable[[str], list[str]]


class OutboundFetchRejected(ValueError):
    """URL failed outbound policy; callers must not retry."""

    retryable = False

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Outbound fetch rejected for {url}: {reason}")
        self.url = url
        self.reason = reason


class OutboundRateLimited(RuntimeError):
    """Process-wide outbound request budget is exhausted."""


class TokenBucket:
    """Thread-safe token bucket."""

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def consume(self, cost: float = 1.0) -> bool:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last_refill)
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
            self._last_refill = now
            if self._tokens < cost:
                return False
            self._tokens -= cost
            return True


OUTBOUND_RATE_LIMITER = TokenBucket(RATE_LIMIT_CAPACITY, RATE_LIMIT_REFILL_PER_SECOND)


@dataclass(slots=True, frozen=True)
class FetchPolicy:
    """Per-call destination restrictions on top of the address checks."""

    allowed_ports: tuple[int, ...] = DEFAULT_ALLOWED_PORTS
    allowed_hosts: tuple[str, ...] = ()
    allowed_host_suffixes: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ValidatedUrl:
    url: httpx.URL
    hostname: str
    resolved_ips: list[str] = field(default_factory=list)

    @property
    def pinned_ip(self) -> str:
        return self.resolved_ips[0]


@dataclass(slots=True)
class SafeFetchResult:
    response: httpx.Response
    final_url: str
    redirects: int = 0


def resolve_host(hostname: str) -> list[str]:
    """Resolve every A/AAAA address for ``hostname``; [] when resolution fails."""

    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError):
        return []
    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = str(sockaddr[0]).split("%", 1)[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_forbidden_ip(address: str) -> bool:
    """True for loopback, private, link-local, multicast and tunnelling ranges."""

    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return _forbidden_ipv4(ip.ipv4_mapped)
        return any(ip in network for network in FORBIDDEN_IPV6_NETWORKS)
    return _forbidden_ipv4(ip)


def _forbidden_ipv4(ip: ipaddress.IPv4Address) -> bool:
    return any(ip in network for network in FORBIDDEN_IPV4_NETWORKS)


def _parse_url(url: str) -> httpx.URL:
    try:
        return httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as error:
        raise OutboundFetchRejected(url, "invalid URL format") from error


def _is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


def validate_url(url: str, *, resolver: Resolver = resolve_host) -> list[str]:
    """Check scheme, host and every resolved address; return the resolved addresses."""

    return _validate(url, resolver=resolver).resolved_ips


def _validate(url: str, *, resolver: Resolver) -> ValidatedUrl:
    parsed = _parse_url(url)
    if parsed.scheme not in {"http", "https"}:
        raise OutboundFetchRejected(url, "only http and https are allowed")
    if parsed.userinfo:
        raise OutboundFetchRejected(url, "credentials in URL are not allowed")

    hostname = parsed.host.lower().strip("[]")
    if not hostname.strip():
        raise OutboundFetchRejected(url, "invalid hostname")
    if hostname in BLOCKED_HOSTS:
        raise OutboundFetchRejected(url, f"host {hostname} is forbidden")

    if _is_ip_literal(hostname):
        addresses = [hostname]
    else:
        addresses = resolver(hostname)
        if not addresses:
            raise OutboundFetchRejected(url, f"hostname {hostname} could not be resolved")

    for address in addresses:
        if is_forbidden_ip(address):
            raise OutboundFetchRejected(url, f"IP address {address} is forbidden")
    return ValidatedUrl(url=parsed, hostname=hostname, resolved_ips=list(addresses))


def validate_url_with_policy(
    url: str,
    *,
    policy: FetchPolicy | None = None,
    resolver: Resolver = resolve_host,
) -> ValidatedUrl:
    """Address checks plus port and host allow-lists."""

    effective = policy or FetchPolicy()
    validated = _validate(url, resolver=resolver)
    port = validated.url.port or (443 if validated.url.scheme == "https" else 80)
    if port not in effective.allowed_ports:
        raise OutboundFetchRejected(url, f"destination port {port} is not allowed")
    if effective.allowed_hosts and validated.hostname not in {
        host.lower() for host in effective.allowed_hosts
    }:
        raise OutboundFetchRejected(url, "destination host is not allowed")
    if effective.allowed_host_suffixes and not any(
        _matches_suffix(validated.hostname, suffix) for suffix in effective.allowed_host_suffixes
    ):
        raise OutboundFetchRejected(url, "destination host is not allowed")
    return validated


def _matches_suffix(hostname: str, suffix: str) -> bool:
    allowed = suffix.lower().lstrip(".")
    return hostname == allowed or hostname.endswith(f".{allowed}")


def _pinned_url(validated: ValidatedUrl) -> httpx.URL:
    ip = validated.pinned_ip
    host = f"[{ip}]" if ":" in ip else ip
    return validated.url.copy_with(host=host)


def _host_header(validated: ValidatedUrl) -> str:
    host = f"[{validated.hostname}]" if ":" in validated.hostname else validated.hostname
    if validated.url.port is None:
        return host
    return f"{host}:{validated.url.port}"


def _origin(url: httpx.URL) -> tuple[str, str, int | None]:
    port = url.port or _DEFAULT_PORTS.get(url.scheme)
    return url.scheme, url.host.lower(), port


def safe_fetch(  # noqa: PLR0913
    url: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    headers: Mapping[str, str] | None = None,
    method: str = "GET",
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    policy: FetchPolicy | None = None,
    resolver: Resolver = resolve_host,
    transport: httpx.BaseTransport | None = None,
    rate_limiter: TokenBucket = OUTBOUND_RATE_LIMITER,
) -> SafeFetchResult:
    """Fetch a URL connecting only to validated addresses.

    The request goes to the first validated IP with the original ``Host``
    header and TLS SNI name, so a second DNS answer cannot redirect the
    connection. Redirects are followed manually and every hop is
    revalidated; an https to http downgrade is rejected.
    """

    current_url = url
    redirects = 0
    forward_headers = dict(headers or {})
    with httpx.Client(
        timeout=httpx.Timeout(timeout_seconds),
        follow_redirects=False,
        transport=transport,
    ) as client:
        while True:
            if not rate_limiter.consume():
                raise OutboundRateLimited("Outbound request rate limit exceeded.")
            validated = validate_url_with_policy(current_url, policy=policy, resolver=resolver)
            request_headers = dict(forward_headers)
            request_headers["Host"] = _host_header(validated)
            response = client.request(
                method,
                _pinned_url(validated),
                headers=request_headers,
                extensions={"sni_hostname": validated.hostname},
            )
            location = response.headers.get("location")
            if response.status_code not in _REDIRECT_STATUSES or not location:
                return SafeFetchResult(
                    response=response,
                    final_url=str(validated.url),
                    redirects=redirects,
                )
            if redirects >= max_redirects:
                raise OutboundFetchRejected(current_url, "too many redirects")
            next_url = validated.url.join(location)
            if validated.url.scheme == "https" and next_url.scheme == "http":
                raise OutboundFetchRejected(str(next_url), "redirect downgrade to http")
            if _origin(next_url) != _origin(validated.url):
                forward_headers = {
                    name: value
                    for name, value in forward_headers.items()
                    if name.lower() not in _CREDENTIAL_HEADERS
                }
            logger.debug("Following redirect %s -> %s", validated.url, next_url)
            current_url = str(next_url)
            redirects += 1
            if response.status_code == 303:  # noqa: PLR2004
                method = "GET"
