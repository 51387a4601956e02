"""ZIP code → city/state lookup used to auto-fill location fields.

Best-effort: any failure (no key, timeout, HTTP error, no match) yields
None and the conversation simply asks for city and state instead.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

log = logging.getLogger("intake.geocoding")

_ZIP5_RE = re.compile(r"^\d{5}")


@dataclass
class ZipLocation:
    city: str
    state: str  # 2-letter code


class Geocoder(ABC):
    """Abstract postal-code lookup backend."""

    @abstractmethod
    async def lookup_zip(self, zip_code: str) -> ZipLocation | None:
        """Resolve a US ZIP code to its city and state, or None if unknown."""


class GoogleGeocoder(Geocoder):
    """Google Maps Geocoding API over httpx."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://maps.googleapis.com/maps/api/geocode/json",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def lookup_zip(self, zip_code: str) -> ZipLocation | None:
        match = _ZIP5_RE.match(zip_code.strip())
        if not match:
            return None
        zip5 = match.group(0)

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                resp = await client.get(
                    self._base_url,
                    params={
                        "address": zip5,
                        "components": "country:US",
                        "key": self._api_key,
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException:
            log.warning("Geocoding timed out for ZIP %s", zip5)
            return None
        except httpx.HTTPStatusError as exc:
            log.warning(
                "Geocoding returned status %s for ZIP %s", exc.response.status_code, zip5,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("Geocoding failed for ZIP %s: %s", zip5, exc)
            return None

        if data.get("status") != "OK" or not data.get("results"):
            log.info("No geocoding match for ZIP %s (status %s)", zip5, data.get("status"))
            return None
        return _parse_components(data["results"][0].get("address_components", []))


def _parse_components(components: list[dict]) -> ZipLocation | None:
    """Pick locality (or county when there is none) and the state short name."""
    city = ""
    county = ""
    state = ""
    for component in components:
        types = component.get("types", [])
        if "locality" in types:
            city = component.get("long_name") or component.get("short_name", "")
        elif "administrative_area_level_2" in types:
            county = component.get("short_name", "")
        elif "administrative_area_level_1" in types:
            state = component.get("short_name", "")
    city = city or county
    if city and len(state) == 2:
        return ZipLocation(city=city, state=state.upper())
    return None
