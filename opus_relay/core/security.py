import asyncio
import ipaddress
import socket
from enum import Enum, auto
from typing import Iterable
from urllib.parse import urlparse

from opus_relay.config.settings import config
from opus_relay.infra.redis import get_redis
from opus_relay.utils.hash import cache_key as make_cache_key

SSRF_CACHE_TTL = 300


class UrlValidationResult(Enum):
    """URL validation result without throwing exceptions"""
    OK = auto()
    BLOCKED = auto()
    INVALID = auto()


def is_blocked_address(ip_str: str) -> bool:
    ip = ipaddress.ip_address(ip_str)
    if ip.is_loopback:
        return not config.security.allow_localhost
    if ip.is_private:
        return not config.security.allow_private_ips
    return ip.is_link_local or ip.is_multicast or ip.is_reserved


def any_blocked(addresses: Iterable[str]) -> bool:
    return any(is_blocked_address(ip) for ip in addresses)


class SecurityValidator:
    """
    Keep content URLs from pointing the resolver at internal hosts.
    Returns a result enum; endpoints decide the HTTP status.
    """

    @staticmethod
    async def validate_url(url: str) -> UrlValidationResult:
        if not config.security.enable_ssrf_protection:
            return UrlValidationResult.OK

        hostname = urlparse(url).hostname
        if not hostname:
            return UrlValidationResult.INVALID

        # Literal IPs need no DNS round-trip
        try:
            return UrlValidationResult.BLOCKED if is_blocked_address(hostname) else UrlValidationResult.OK
        except ValueError:
            pass

        redis = get_redis()
        cache_key = make_cache_key("ssrf", hostname)
        if redis:
            try:
                cached = await redis.get(cache_key)
                if cached == "ok":
                    return UrlValidationResult.OK
                if cached == "blocked":
                    return UrlValidationResult.BLOCKED
            except Exception:
                redis = None

        try:
            addr_info = await asyncio.to_thread(socket.getaddrinfo, hostname, None)
        except socket.gaierror:
            # Unresolvable here; yt-dlp reports the real error
            return UrlValidationResult.OK

        try:
            blocked = any_blocked(info[4][0] for info in addr_info)
        except ValueError:
            return UrlValidationResult.INVALID

        if redis:
            try:
                await redis.setex(cache_key, SSRF_CACHE_TTL, "blocked" if blocked else "ok")
            except Exception:
                pass

        return UrlValidationResult.BLOCKED if blocked else UrlValidationResult.OK
