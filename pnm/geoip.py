"""Geolocation enrichment: memory cache, directory record, MaxMind, ip-api."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

import geoip2.database
import geoip2.errors
import requests

from pnm.address import is_public_ip
from pnm.cache import LayeredLookup, TTLCache
from pnm.config import PnmConfig
from pnm.models import LocationData
from pnm.ratelimit import RateLimiter, shared_limiter

if TYPE_CHECKING:
    from pnm.store import DirectoryStore

logger = logging.getLogger(__name__)

IP_API_FIELDS = "status,message,query,country,countryCode,city,lat,lon"
IP_API_BATCH_SIZE = 100
GEO_LIMITER_NAME = "geolocation"


class GeoIPReader:
    """Wrapper around a MaxMind GeoLite2-City database reader.

    The reader is tolerant of a missing database file: if the path is
    ``None`` or points to a non-existent file, lookups simply return
    ``None``.

    Args:
        city_db_path: Path to ``GeoLite2-City.mmdb``, or ``None``.
        clock: Time source used to stamp results.
    """

    def __init__(
        self,
        city_db_path: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._city_reader: geoip2.database.Reader | None = None
        self._clock = clock

        if city_db_path:
            try:
                self._city_reader = geoip2.database.Reader(city_db_path)
                logger.debug("Opened GeoLite2-City DB: %s", city_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-City DB not found at %s; local geolocation disabled",
                    city_db_path,
                )

    def close(self) -> None:
        """Close the underlying database reader."""
        if self._city_reader:
            self._city_reader.close()

    def lookup_city(self, ip: str) -> LocationData | None:
        """Look up city/country/coordinates for an IP address.

        Returns:
            A ``LocationData``, or ``None`` if there is no database or the
            address is not in it.
        """
        if not self._city_reader:
            return None
        try:
            resp = self._city_reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("City lookup failed for %s", ip)
            return None

        if resp.location.latitude is None or resp.location.longitude is None:
            return None
        return LocationData(
            ip=ip,
            latitude=resp.location.latitude,
            longitude=resp.location.longitude,
            city=resp.city.name,
            country=resp.country.name,
            country_code=resp.country.iso_code,
            fetched_at=self._clock(),
        )


class IpApiClient:
    """Client for the ip-api.com JSON and batch endpoints.

    Every failure (timeout, non-200, ``status: fail``) is logged and turned
    into ``None`` or an omitted entry; nothing is raised.
    """

    def __init__(
        self,
        base_url: str = "http://ip-api.com",
        timeout: float = 3.0,
        batch_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_timeout = batch_timeout
        self._clock = clock
        self.calls = 0

    def _to_location(self, data: dict, ip: str) -> LocationData | None:
        if data.get("status") != "success":
            logger.warning("ip-api lookup failed for %s: %s", ip, data.get("message", "failed"))
            return None
        if data.get("lat") is None or data.get("lon") is None:
            return None
        return LocationData(
            ip=ip,
            latitude=data["lat"],
            longitude=data["lon"],
            city=data.get("city") or None,
            country=data.get("country") or None,
            country_code=data.get("countryCode") or None,
            fetched_at=self._clock(),
        )

    def fetch(self, ip: str) -> LocationData | None:
        """Look up a single IP."""
        self.calls += 1
        try:
            response = requests.get(
                f"{self.base_url}/json/{ip}",
                params={"fields": IP_API_FIELDS},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("ip-api request failed for %s: %s", ip, exc)
            return None

        if not isinstance(data, dict):
            return None
        return self._to_location(data, ip)

    def fetch_batch(self, ips: list[str]) -> dict[str, LocationData]:
        """Look up up to ``IP_API_BATCH_SIZE`` IPs in one request."""
        self.calls += 1
        try:
            response = requests.post(
                f"{self.base_url}/batch",
                params={"fields": IP_API_FIELDS},
                json=ips,
                timeout=self.batch_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("ip-api batch of %d failed: %s", len(ips), exc)
            return {}

        if not isinstance(data, list):
            logger.warning("ip-api batch returned %s, expected a list", type(data).__name__)
            return {}

        results: dict[str, LocationData] = {}
        for item in data:
            if not isinstance(item, dict) or not item.get("query"):
                continue
            loc = self._to_location(item, item["query"])
            if loc is not None:
                results[item["query"]] = loc
        return results


class GeoLocator:
    """Geolocation enrichment cache.

    Lookup order for an IP: memory cache, then the location already stored
    on a directory record if younger than the TTL, then the local MaxMind
    database, then the external ip-api service under the shared
    geolocation rate limiter.  Private, loopback and malformed addresses
    resolve to ``None`` without any lookup.

    Args:
        config: Loaded configuration (TTL, rate limit, endpoints).
        store: Directory store used for the persisted layer, optional.
        reader: MaxMind reader; built from ``config.maxmind_city_db`` if
            omitted.
        client: ip-api client; built from config if omitted.
        limiter: Rate limiter; the process-wide geolocation limiter if
            omitted.
        clock: Wall-clock source, injectable for tests.
    """

    def __init__(
        self,
        config: PnmConfig,
        store: DirectoryStore | None = None,
        reader: GeoIPReader | None = None,
        client: IpApiClient | None = None,
        limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = config.geo_cache_ttl
        self._clock = clock
        self._store = store
        self.reader = reader or GeoIPReader(config.maxmind_city_db, clock=clock)
        self.client = client or IpApiClient(
            config.geo_api_url,
            timeout=config.geo_timeout,
            batch_timeout=config.geo_batch_timeout,
            clock=clock,
        )
        self.limiter = limiter or shared_limiter(GEO_LIMITER_NAME, config.geo_rate_limit)
        self.cache: TTLCache[LocationData] = TTLCache(self.ttl, clock=clock)
        self._local = LayeredLookup(
            self.cache,
            [("persisted", self._from_store), ("maxmind", self.reader.lookup_city)],
        )
        self._lookup = LayeredLookup(
            self.cache,
            [
                ("persisted", self._from_store),
                ("maxmind", self.reader.lookup_city),
                ("ip-api", self._from_api),
            ],
        )

    def _from_store(self, ip: str) -> LocationData | None:
        if self._store is None:
            return None
        loc = self._store.find_location(ip)
        if loc is None or self._clock() - loc.fetched_at >= self.ttl:
            return None
        return loc

    def _from_api(self, ip: str) -> LocationData | None:
        if not self.limiter.try_acquire():
            logger.warning(
                "Geolocation rate limit reached, deferring %s (retry in %.0fs)",
                ip,
                self.limiter.retry_after(),
            )
            return None
        return self.client.fetch(ip)

    def get(self, ip: str) -> LocationData | None:
        """Return the location of *ip*, or ``None`` to enrich later."""
        if not is_public_ip(ip):
            return None
        return self._lookup.get(ip)

    def get_many(self, ips: Iterable[str]) -> dict[str, LocationData]:
        """Locate many IPs, batching external misses into bulk calls.

        Each batch of up to ``IP_API_BATCH_SIZE`` addresses costs one rate
        limiter slot.  When the limiter refuses, the remaining addresses are
        left for a later cycle.

        Returns:
            Mapping of IP to location for every address that resolved.
        """
        unique = list(dict.fromkeys(ip for ip in ips if is_public_ip(ip)))
        results: dict[str, LocationData] = {}
        pending: list[str] = []

        for ip in unique:
            loc = self._local.get(ip)
            if loc is not None:
                results[ip] = loc
            else:
                pending.append(ip)

        logger.debug(
            "Geolocation: %d local, %d need external lookup", len(results), len(pending)
        )

        for start in range(0, len(pending), IP_API_BATCH_SIZE):
            batch = pending[start : start + IP_API_BATCH_SIZE]
            if not self.limiter.try_acquire():
                logger.warning(
                    "Geolocation rate limit reached, deferring %d address(es) (retry in %.0fs)",
                    len(pending) - start,
                    self.limiter.retry_after(),
                )
                break
            fetched = self.client.fetch_batch(batch)
            for ip, loc in fetched.items():
                self.cache.put(ip, loc, loc.fetched_at)
                results[ip] = loc

        return results

    def clear(self) -> None:
        """Administrative clear of the memory cache."""
        self.cache.clear()

    def close(self) -> None:
        self.reader.close()
