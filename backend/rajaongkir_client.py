# backend/rajaongkir_client.py

"""
RajaOngkir (Komerce) shipping-rate client.

Docs: https://rajaongkir.com/dokumentasi
Responses are wrapped as {"meta": {"code", "status", "message"}, "data": [...]}.
Weight is always sent in grams, as produced by shipping_weight.aggregate().
"""

from typing import Any, Dict, List, Optional
import logging

import requests

logger = logging.getLogger(__name__)

RAJAONGKIR_BASE_URL = "https://rajaongkir.komerce.id/api/v1"
REQUEST_TIMEOUT_SECONDS = 15

COURIER_CONFIG = {
    # Starter plan
    "free": ["jne", "pos", "tiki"],
    "all": ["jne", "pos", "tiki", "sicepat", "ide", "sap", "ninja", "jnt", "wahana", "lion", "rex"],
    "international": ["jne", "tiki", "pos"],
    "names": {
        "jne": "JNE",
        "pos": "POS Indonesia",
        "tiki": "TIKI",
        "sicepat": "SiCepat",
        "ide": "ID Express",
        "sap": "SAP Express",
        "ninja": "Ninja Xpress",
        "jnt": "J&T Express",
        "wahana": "Wahana Express",
        "lion": "Lion Parcel",
        "rex": "Royal Express Asia",
    },
}

HTTP_ERROR_HINTS = {
    401: "API key is invalid, check RAJAONGKIR_API_KEY",
    410: "API key expired or suspended",
    429: "API quota exceeded",
}


class RajaOngkirError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def available_couriers(is_international: bool, plan: str = "free") -> List[str]:
    if is_international:
        return list(COURIER_CONFIG["international"])
    return list(COURIER_CONFIG["free"] if plan == "free" else COURIER_CONFIG["all"])


def courier_name(code: str) -> str:
    return COURIER_CONFIG["names"].get(code, code.upper())


class RajaOngkirClient:
    def __init__(self, api_key: str, base_url: str = RAJAONGKIR_BASE_URL, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _unwrap(self, response: requests.Response, what: str) -> List[Dict[str, Any]]:
        if not response.ok:
            hint = HTTP_ERROR_HINTS.get(response.status_code, response.reason)
            logger.error(f"RajaOngkir {what} failed: HTTP {response.status_code} {hint}")
            raise RajaOngkirError(f"HTTP {response.status_code}: {hint}", status_code=response.status_code)

        data = response.json()
        meta = data.get("meta") if isinstance(data, dict) else None
        if not meta:
            raise RajaOngkirError(f"Invalid response from RajaOngkir: {data}")
        if meta.get("code") != 200:
            message = meta.get("message") or "Unknown error"
            logger.error(f"RajaOngkir {what} error: {message}")
            raise RajaOngkirError(f"RajaOngkir API Error: {message}", status_code=meta.get("code"))
        if not isinstance(data.get("data"), list):
            raise RajaOngkirError("No data in RajaOngkir response")
        return data["data"]

    def search_city(self, name: str, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            response = self.session.get(
                f"{self.base_url}/destination/domestic-destination",
                params={"search": name, "limit": limit, "offset": 0},
                headers={"key": self.api_key},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"RajaOngkir city search failed: {e}")
            raise RajaOngkirError(f"Failed to search city: {e}")
        return self._unwrap(response, "city search")

    def is_international_destination(self, city_name: str) -> bool:
        """No match in the domestic destination list means abroad; errors count as domestic."""
        try:
            return len(self.search_city(city_name)) == 0
        except RajaOngkirError as e:
            logger.warning(f"Could not classify destination '{city_name}': {e.message}")
            return False

    def calculate_shipping_cost(self, origin: str, destination: str, weight: int, courier: str) -> List[Dict[str, Any]]:
        """
        Returns one entry per service:
        {code, name, service, description, cost, etd}
        """
        if not self.api_key:
            raise RajaOngkirError("RAJAONGKIR_API_KEY is not configured")
        try:
            response = self.session.post(
                f"{self.base_url}/calculate/district/domestic-cost",
                data={
                    "origin": origin,
                    "destination": destination,
                    "weight": str(weight),
                    "courier": courier,
                },
                headers={"key": self.api_key},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"RajaOngkir cost request for {courier} failed: {e}")
            raise RajaOngkirError(f"Failed to calculate shipping cost: {e}")

        services = self._unwrap(response, f"cost ({courier})")
        return [
            {
                "code": item.get("code", courier),
                "name": item.get("name") or courier_name(courier),
                "service": item.get("service", ""),
                "description": item.get("description", ""),
                "cost": item.get("cost", 0),
                "etd": item.get("etd", ""),
            }
            for item in services
        ]

    def calculate_multiple_couriers(
        self,
        origin: str,
        destination: str,
        weight: int,
        couriers: List[str]
    ) -> List[Dict[str, Any]]:
        """Couriers that fail are skipped; the rest are returned cheapest first."""
        results: List[Dict[str, Any]] = []
        for courier in couriers:
            try:
                results.extend(self.calculate_shipping_cost(origin, destination, weight, courier))
            except RajaOngkirError as e:
                logger.warning(f"Skipping courier {courier}: {e.message}")
        return sorted(results, key=lambda option: option["cost"])
