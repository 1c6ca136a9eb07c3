import logging
import time

from ml_config import GEOCODE_CACHE_CAPACITY, GEOCODE_CACHE_TTL_SEC, GEOCODE_DELAY_SEC
from errors import GeocodingError
from text_utils import normalize

from .cache import LTRUCache, MISSING
from .client import GeocodingClient
from .geometry_utils import find_nearest

logger = logging.getLogger(__name__)


class GeoResolver:
    """
    Address -> coordinates through the geocoding collaborator, and
    coordinates -> nearest known reference location.
    """

    def __init__(self, client=None, cache=None, delay=GEOCODE_DELAY_SEC, sleep=time.sleep):
        self.client = client or GeocodingClient()
        self.cache = cache or LTRUCache(capacity=GEOCODE_CACHE_CAPACITY, default_ttl=GEOCODE_CACHE_TTL_SEC)
        self.delay = delay
        self._sleep = sleep

    def resolve(self, address):
        coords, _ = self._lookup(address)
        return coords

    def _lookup(self, address):
        # Returns (coords, called_geocoder)
        if not address or not str(address).strip():
            return None, False

        key = normalize(address)
        cached = self.cache.get(key, MISSING)
        if cached is not MISSING:
            return cached, False

        try:
            coords = self.client.get_coordinates(str(address).strip())
        except GeocodingError as e:
            # Transient: don't cache, caller treats as cost unavailable
            logger.warning("Geocoding failed for %r: %s", address, e)
            return None, True

        self.cache.set(key, coords)
        return coords, True

    def resolve_many(self, addresses, delay=None, should_stop=None):
        """
        Geocodes addresses one at a time with a pause after every real
        geocoder call. Failed or empty results are skipped.
        Returns {address: {'lat', 'lng'}}.
        """
        delay = self.delay if delay is None else delay
        resolved = {}
        for address in addresses:
            if should_stop and should_stop():
                break
            coords, called = self._lookup(address)
            if coords is None:
                logger.warning("Skipping %r: coordinates not found", address)
            else:
                resolved[address] = coords
            if called and delay > 0:
                self._sleep(delay)
        return resolved

    @staticmethod
    def nearest(reference_set, point, country=None):
        """(ReferenceLocation, distance_km) closest to point, or None."""
        if point is None:
            return None
        return find_nearest(reference_set, point, country=country)
