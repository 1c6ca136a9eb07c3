import logging
import threading
import time

import requests

from ml_config import GEOCODE_BASE_URL, GEOCODE_TIMEOUT_SEC, GOOGLE_MAPS_API_KEY
from errors import GeocodingError

logger = logging.getLogger(__name__)


class GeocodingClient:
    STATE_CLOSED = "CLOSED"
    STATE_OPEN = "OPEN"
    STATE_HALF_OPEN = "HALF_OPEN"

    def __init__(self, api_key=GOOGLE_MAPS_API_KEY, base_url=GEOCODE_BASE_URL,
                 failure_threshold=3, cooldown=30, session=None):
        self.api_key = api_key
        self.base_url = base_url
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.session = session or requests.Session()

        self.state = self.STATE_CLOSED
        self.failures = 0
        self.last_failure_time = 0
        self.sem = threading.Semaphore(5)  # Concurrency Cap

    def get_coordinates(self, address, timeout=GEOCODE_TIMEOUT_SEC):
        """
        Returns {'lat': float, 'lng': float} for the first geocoder result,
        or None when the geocoder reports ZERO_RESULTS for the address.
        Raises GeocodingError on transport failures, non-200 responses,
        error statuses or an open circuit.
        """
        if self.state == self.STATE_OPEN:
            if time.time() - self.last_failure_time > self.cooldown:
                self.state = self.STATE_HALF_OPEN
            else:
                raise GeocodingError("Circuit Open: Geocoder Unavailable")

        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "key": self.api_key}

        try:
            with self.sem:
                resp = self.session.get(url, params=params, timeout=timeout)

            if resp.status_code >= 500:
                self._record_failure()
                raise GeocodingError(f"Geocoder Server Error {resp.status_code}")

            self._reset_circuit()
            if resp.status_code != 200:
                raise GeocodingError(f"Geocoder returned HTTP {resp.status_code}")

            data = resp.json()
            status = data.get("status")
            if status == "ZERO_RESULTS" or (status == "OK" and not data.get("results")):
                logger.info("No coordinates for %r (status=%s)", address, status)
                return None
            if status != "OK":
                # OVER_QUERY_LIMIT, REQUEST_DENIED, UNKNOWN_ERROR: not an answer for the address
                raise GeocodingError(f"Geocoder status {status}")

            location = data["results"][0]["geometry"]["location"]
            return {"lat": float(location["lat"]), "lng": float(location["lng"])}

        except requests.exceptions.RequestException as e:
            self._record_failure()
            raise GeocodingError(f"Geocoder Connection Error: {e}") from e

    def _record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.failures >= self.failure_threshold:
            self.state = self.STATE_OPEN

    def _reset_circuit(self):
        self.state = self.STATE_CLOSED
        self.failures = 0
