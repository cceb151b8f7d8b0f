"""
GeoIP Lookup - IP to country/province/city using a MaxMind GeoIP2 City database
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import geoip2.database
import geoip2.errors
import maxminddb

from ip_traffic_monitor.cache import TTLCache
from ip_traffic_monitor.ip_filter import parse_ip
from ip_traffic_monitor.monitor import MonitorInitError

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
NAME_LOCALES = ("zh-CN", "en")

DEFAULT_CACHE_SIZE = 10000
DEFAULT_CACHE_TTL = 24 * 3600.0


@dataclass(frozen=True)
class GeoInfo:
    """Geographic information for an IP address"""
    country: str = UNKNOWN
    province: str = UNKNOWN
    city: str = UNKNOWN
    isp: str = UNKNOWN

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            "country": self.country,
            "province": self.province,
            "city": self.city,
            "isp": self.isp,
        }


UNKNOWN_GEO = GeoInfo()


def _localized(names: Optional[Dict[str, str]]) -> str:
    if not names:
        return UNKNOWN
    for locale in NAME_LOCALES:
        if names.get(locale):
            return names[locale]
    return UNKNOWN


class GeoIPLookup:
    """GeoIP lookup with a bounded, expiring cache"""

    def __init__(
        self,
        reader: Optional[geoip2.database.Reader] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
        cache_ttl: float = DEFAULT_CACHE_TTL,
    ):
        """
        Args:
            reader: Open GeoIP2 City reader, or None to answer "Unknown" for everything
            cache_size: Maximum number of cached IPs
            cache_ttl: Seconds a cached answer stays valid
        """
        self.reader = reader
        self._reader_lock = threading.Lock()
        self._cache = TTLCache(cache_ttl, max_entries=cache_size)

    @classmethod
    def open(cls, db_path: Optional[str], **kwargs) -> GeoIPLookup:
        """
        Load a GeoLite2/GeoIP2 City database

        Raises:
            MonitorInitError: the database file cannot be read or is not a City database
        """
        if not db_path:
            logger.info("No GeoIP database given, geo labels will be Unknown")
            return cls(None, **kwargs)
        try:
            reader = geoip2.database.Reader(db_path)
        except (OSError, maxminddb.InvalidDatabaseError, ValueError) as e:
            raise MonitorInitError(f"Failed to load GeoIP database {db_path}: {e}") from e

        database_type = reader.metadata().database_type
        if "City" not in database_type:
            reader.close()
            raise MonitorInitError(f"GeoIP database {db_path} is {database_type}, a City database is required")
        logger.info(f"Loaded MaxMind GeoIP database: {db_path}")
        return cls(reader, **kwargs)

    def _query(self, ip: str) -> GeoInfo:
        if self.reader is None or parse_ip(ip) is None:
            return UNKNOWN_GEO
        try:
            with self._reader_lock:
                response = self.reader.city(ip)
        except geoip2.errors.AddressNotFoundError:
            return UNKNOWN_GEO
        except (ValueError, TypeError, geoip2.errors.GeoIP2Error) as e:
            logger.debug(f"GeoIP lookup error for {ip}: {e}")
            return UNKNOWN_GEO

        province = UNKNOWN
        if response.subdivisions:
            province = _localized(response.subdivisions[0].names)
        return GeoInfo(
            country=_localized(response.country.names),
            province=province,
            city=_localized(response.city.names),
            # City databases carry no ISP data
            isp=UNKNOWN,
        )

    def lookup(self, ip: str) -> GeoInfo:
        """
        Lookup geographic information for an IP address

        Args:
            ip: IP address string

        Returns:
            GeoInfo, with "Unknown" fields when nothing is known
        """
        hit, info = self._cache.lookup(ip)
        if hit:
            return info
        info = self._query(ip)
        self._cache.put(ip, info)
        return info

    def close(self) -> None:
        with self._reader_lock:
            if self.reader is not None:
                self.reader.close()
                self.reader = None
