"""
Cache for an upstream identity provider's signing certificates (x509 PEM keyed by kid), as published
for Firebase/Google ID tokens. The cache is an explicit object so callers and tests can inject their own.

Lifecycle: populated lazily on first get(), refreshed once its TTL has passed. The TTL comes from the
response's Cache-Control max-age, else the configured default. When a refresh fails the last good key
set is served; with nothing cached the fetch error propagates and the cache is left untouched.
"""
import logging
import re
import threading
import time
from typing import Callable

import httpx
import jwt
from cryptography.x509 import load_pem_x509_certificate

from oidc_provider.config import UPSTREAM_KEYS_DEFAULT_TTL, UPSTREAM_KEYS_TIMEOUT, UPSTREAM_KEYS_URL

logger = logging.getLogger(__name__)

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")


def parse_max_age(cache_control: str | None) -> int | None:
    if not cache_control:
        return None
    match = _MAX_AGE_RE.search(cache_control)
    return int(match.group(1)) if match else None


class UpstreamKeyCache:
    def __init__(
        self,
        url: str = UPSTREAM_KEYS_URL,
        *,
        timeout: float = UPSTREAM_KEYS_TIMEOUT,
        default_ttl: int = UPSTREAM_KEYS_DEFAULT_TTL,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.default_ttl = default_ttl
        self._client = client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._keys: dict[str, str] | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @property
    def is_stale(self) -> bool:
        return self._keys is None or self._clock() >= self._expires_at

    def refresh(self) -> dict[str, str]:
        """Fetch the key set now. Raises httpx.HTTPError / ValueError without touching cached state."""
        response = self._client.get(self.url)
        response.raise_for_status()
        keys = response.json()
        if not isinstance(keys, dict) or not all(isinstance(v, str) for v in keys.values()):
            raise ValueError("Upstream key set is not a kid -> PEM mapping")
        ttl = parse_max_age(response.headers.get("cache-control"))
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            self._keys = keys
            self._expires_at = self._clock() + ttl
        logger.debug("Fetched %d upstream signing key(s), ttl=%ss", len(keys), ttl)
        return keys

    def get(self) -> dict[str, str]:
        """Current key set; refreshes when stale and falls back to the last good set on failure."""
        if not self.is_stale:
            return self._keys
        try:
            return self.refresh()
        except (httpx.HTTPError, ValueError) as e:
            if self._keys is not None:
                logger.warning("Upstream key refresh failed, serving stale keys: %s", e)
                return self._keys
            raise

    def close(self) -> None:
        self._client.close()


def verify_upstream_token(token: str, cache: UpstreamKeyCache, *, issuer: str, audience: str) -> dict:
    """
    Verify an RS256 ID token issued by the upstream provider; the signing certificate is chosen by kid.
    Raises jwt.InvalidTokenError on any verification failure.
    """
    header = jwt.get_unverified_header(token)
    kid = header.get("kid")
    keys = cache.get()
    if not kid or kid not in keys:
        raise jwt.InvalidTokenError('Invalid or missing "kid" in token header')
    public_key = load_pem_x509_certificate(keys[kid].encode("ascii")).public_key()
    return jwt.decode(token, public_key, algorithms=["RS256"], issuer=issuer, audience=audience)
