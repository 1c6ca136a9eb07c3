"""
PricingService - the one object collaborators talk to.

Owns the model cache, the geocoder and the training worker. Estimation
calls are synchronous and never raise past this boundary: failures come
back as RateQuote UNKNOWN/0, EstimateResult(cost=None) or
QuoteResult(success=False). Training is asynchronous; a successful run
invalidates the cache so the next request reloads fresh artifacts.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ml_config import (
    DEFAULT_EQUIPMENT,
    LARGE_EQUIPMENT,
    LARGE_EQUIPMENT_MIN_CBM,
    MODEL_DIR,
    TRAINING_EXECUTOR,
)
from errors import ArtifactError, InvalidVolumeError
from estimator import EnsembleEstimator, EstimateResult, LinearEstimator
from fuzzy_matcher import FuzzyMatcher
from geocoding.geometry_utils import haversine
from geocoding.resolver import GeoResolver
from model_store import ArtifactStore, ModelCache
from rate_lookup import UNKNOWN, RateQuote, rule_type_for_role
from training_manager import TrainingManager
from units import verify_volume

logger = logging.getLogger(__name__)

COST_UNAVAILABLE = "Could not calculate cost with the provided details"


@dataclass
class QuoteResult:
    success: bool
    price: Optional[float] = None
    rate_type: Optional[str] = None
    message: Optional[str] = None


class PricingService:
    def __init__(self, model_dir=MODEL_DIR, resolver=None, matcher=None, training_manager=None,
                 executor_kind=TRAINING_EXECUTOR):
        self.store = ArtifactStore(model_dir)
        self.cache = ModelCache(self.store)
        self.resolver = resolver or GeoResolver()
        self.matcher = matcher or FuzzyMatcher()
        self.training = training_manager or TrainingManager(
            self.store, resolver=self.resolver, executor_kind=executor_kind)
        self.training.add_listener(self._on_training_event)

        self.estimators = {
            'linear': LinearEstimator(lambda: self.cache.require('linear'), matcher=self.matcher),
            'ensemble': EnsembleEstimator(lambda: self.cache.require('ensemble')),
        }

    # --- artifacts ---

    def _artifact(self, name):
        """Current artifact, or None when it is absent or unreadable."""
        try:
            return self.cache.get(name)
        except ArtifactError as e:
            logger.error("Failed to load %s: %s", name, e)
            return None

    def _on_training_event(self, event):
        if event.success:
            logger.info("Training for %s finished, refreshing models", event.dataset_kind)
            self.cache.invalidate()
        else:
            logger.warning("Training for %s failed, keeping current models: %s",
                           event.dataset_kind, event.error)

    # --- estimation ---

    def estimate_tiered_rate(self, distance, volume, role, operation_name) -> RateQuote:
        table = self._artifact('tiered_rates')
        if table is None:
            logger.warning("No tiered rate table available")
            return RateQuote(UNKNOWN, 0)
        return table.lookup(distance, volume, rule_type_for_role(role), operation_name)

    def estimate_regression_cost(self, origin, destination, equipment, trade_lane=None, mode=None,
                                 extras=None, strategy='linear') -> EstimateResult:
        estimator = self.estimators.get(strategy)
        if estimator is None:
            return EstimateResult(cost=None, error=f"Unknown estimation strategy: {strategy}")
        extras = extras or {}
        return estimator.predict(
            origin, destination, equipment,
            trade_lane=trade_lane,
            mode=mode,
            transit_duration=extras.get('transit_duration'),
            sailings=extras.get('sailings'),
        )

    def lookup_cached_rate(self, origin, destination, equipment_type):
        cache = self._artifact('rate_cache')
        if cache is None:
            return None
        return cache.lookup_cost(origin, destination, equipment_type)

    # --- quotes ---

    def quote_domestic(self, origin_address, destination_address, volume, unit, role='transport'):
        """
        Tiered-rate quote between two addresses. The operation town is the
        domestic reference location nearest to the origin. With
        role='origin' the distance is origin -> that town.
        """
        try:
            cbm = verify_volume(volume, unit)
        except InvalidVolumeError as e:
            return QuoteResult(False, message=str(e))

        source = self.resolver.resolve(origin_address)
        if source is None:
            return QuoteResult(False, message="Failed to fetch coordinates for source.")

        towns = self._artifact('domestic_locations') or []
        nearest = self.resolver.nearest(towns, source)
        if nearest is None:
            return QuoteResult(False, message="No operation town available")
        town, town_distance = nearest

        if str(role or '').strip().lower() == 'origin':
            distance = town_distance
        else:
            dest = self.resolver.resolve(destination_address)
            if dest is None:
                return QuoteResult(False, message="Failed to fetch coordinates for destination.")
            distance = haversine(source['lat'], source['lng'], dest['lat'], dest['lng'])

        quote = self.estimate_tiered_rate(distance, cbm, role, town.name)
        if not quote.available:
            return QuoteResult(False, message=COST_UNAVAILABLE)
        return QuoteResult(True, price=quote.rate, rate_type=quote.rate_type)

    def quote_freight(self, origin_point, destination_point, origin_country, destination_country,
                      volume, unit, strategy='linear'):
        """
        Port-to-port quote: nearest freight port on each side, exact cached
        rate first, regression estimate when the lane was never seen.
        """
        try:
            cbm = verify_volume(volume, unit)
        except InvalidVolumeError as e:
            return QuoteResult(False, message=str(e))

        equipment = LARGE_EQUIPMENT if cbm > LARGE_EQUIPMENT_MIN_CBM else DEFAULT_EQUIPMENT
        ports = self._artifact('freight_locations') or []
        source = self.resolver.nearest(ports, origin_point, country=origin_country)
        dest = self.resolver.nearest(ports, destination_point, country=destination_country)
        if source is None or dest is None:
            return QuoteResult(False, message="No freight location found for origin or destination")
        source_port, dest_port = source[0], dest[0]

        cached = self.lookup_cached_rate(source_port.name, dest_port.name, equipment)
        if cached and cached['cost']:
            return QuoteResult(True, price=round(cached['cost'] * cbm, 2), rate_type='freight')

        estimate = self.estimate_regression_cost(source_port.name, dest_port.name, equipment,
                                                 strategy=strategy)
        if not estimate.priced or estimate.cost <= 0:
            return QuoteResult(False, message=estimate.error or COST_UNAVAILABLE)
        return QuoteResult(True, price=round(estimate.cost * cbm, 2), rate_type='freight-estimate')

    # --- training ---

    def train(self, source_rows, headers, dataset_kind, options=None):
        """Returns a Future resolving to a TrainingEvent."""
        return self.training.start_training_async(source_rows, headers, dataset_kind, options)

    def training_status(self):
        return self.training.get_status()

    def training_metadata(self):
        return self.store.load_metadata()

    def close(self):
        self.training.shutdown()
