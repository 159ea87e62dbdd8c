"""
IP geolocation lookups.

GeoLookup is the seam for a real GeoIP database. StaticGeoLookup resolves
addresses against a CIDR table from settings, most specific network first.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class GeoInfo:
    country: Optional[str] = None
    org: Optional[str] = None

    def to_dict(self) -> dict:
        return {"country": self.country, "org": self.org}


class GeoLookup(Protocol):
    def lookup(self, ip: str) -> Optional[GeoInfo]: ...


class StaticGeoLookup:
    """
    CIDR table lookup.

    Example table:
        {"203.0.113.0/24": {"country": "RU", "org": "Example Hosting"}}
    """

    def __init__(self, networks: Optional[dict[str, dict[str, str]]] = None):
        self._networks: list[tuple[ipaddress._BaseNetwork, GeoInfo]] = []
        for cidr, info in (networks or {}).items():
            try:
                network = ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                logger.warning(f"Ignoring invalid geo network {cidr!r}")
                continue
            self._networks.append(
                (network, GeoInfo(country=info.get("country"), org=info.get("org")))
            )
        self._networks.sort(key=lambda item: item[0].prefixlen, reverse=True)

    def lookup(self, ip: str) -> Optional[GeoInfo]:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return None
        for network, info in self._networks:
            if address.version == network.version and address in network:
                return info
        return None
