"""
Regression cost estimators.

LinearEstimator   - fuzzy-matched vocabulary indices fed to one linear model.
EnsembleEstimator - frequency-capped exact encoding plus transit duration and
                    sailings, averaged over chunk-trained sub-models.

Both return an EstimateResult instead of raising, so batch callers can tell
"priced" from "unpriceable" without per-item exception handling.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from ml_config import CURRENCY, DEFAULT_ENSEMBLE_MODE, DEFAULT_LINEAR_MODE, DEFAULT_TRADE_LANE
from errors import PricingError, UnresolvableCategoryError
from fuzzy_matcher import FuzzyMatcher

logger = logging.getLogger(__name__)

MANDATORY_COLUMNS = ('origin_location', 'destination_location', 'equipment_type')


@dataclass
class EstimateResult:
    cost: Optional[float]
    currency: Optional[str] = None
    error: Optional[str] = None
    column: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    matches: dict = field(default_factory=dict)

    @property
    def priced(self):
        return self.cost is not None


def _number(value):
    try:
        return float(value) if value not in (None, '') else 0.0
    except (TypeError, ValueError):
        return 0.0


class Estimator(ABC):
    def __init__(self, artifact_loader):
        # artifact_loader() returns the current artifact or raises NoModelAvailableError
        self.artifact_loader = artifact_loader

    def predict(self, origin, destination, equipment, trade_lane=None, mode=None,
                transit_duration=None, sailings=None) -> EstimateResult:
        try:
            artifact = self.artifact_loader()
            cost, matches = self._predict(artifact, origin, destination, equipment,
                                          trade_lane, mode, transit_duration, sailings)
        except UnresolvableCategoryError as e:
            logger.warning("Prediction error: %s", e)
            return EstimateResult(cost=None, error=str(e), column=e.column, suggestions=e.suggestions)
        except PricingError as e:
            logger.warning("Prediction error: %s", e)
            return EstimateResult(cost=None, error=str(e))
        except Exception as e:
            logger.exception("Unexpected prediction failure")
            return EstimateResult(cost=None, error=f"Prediction failed: {e}")

        logger.info("Predicted cost for %s -> %s (%s): %.2f %s",
                    origin, destination, equipment, cost, CURRENCY)
        return EstimateResult(cost=cost, currency=CURRENCY, matches=matches)

    @abstractmethod
    def _predict(self, artifact, origin, destination, equipment, trade_lane, mode,
                 transit_duration, sailings):
        """Returns (cost, matches) or raises PricingError."""


class LinearEstimator(Estimator):
    name = 'linear'

    def __init__(self, artifact_loader, matcher=None):
        super().__init__(artifact_loader)
        self.matcher = matcher or FuzzyMatcher()

    def _predict(self, artifact, origin, destination, equipment, trade_lane, mode,
                 transit_duration, sailings):
        raw = {
            'origin_location': origin,
            'destination_location': destination,
            'equipment_type': equipment,
            'trade_lane': trade_lane or DEFAULT_TRADE_LANE,
            'mode': mode or DEFAULT_LINEAR_MODE,
        }

        features, matches = [], {}
        for col in artifact.columns:
            result = self.matcher.encode(artifact.vocabularies[col], raw.get(col))
            if not result.matched:
                if col in MANDATORY_COLUMNS:
                    raise UnresolvableCategoryError(col, result.suggestions)
                # Optional columns fall back to index 0
                matches[col] = {'index': 0, 'matched': None, 'method': 'fallback'}
                features.append(0)
                continue
            matches[col] = {'index': result.index, 'matched': result.matched_value, 'method': result.method}
            features.append(result.index)

        logger.debug("Encoded input: %s", matches)
        return round(artifact.predict_one(features), 2), matches


class EnsembleEstimator(Estimator):
    name = 'ensemble'

    def _predict(self, artifact, origin, destination, equipment, trade_lane, mode,
                 transit_duration, sailings):
        enc = artifact.encoder
        features = [
            enc.encode_value('origin', origin),
            enc.encode_value('destination', destination),
            enc.encode_value('equipment', equipment),
            enc.encode_value('mode', mode or DEFAULT_ENSEMBLE_MODE),
            _number(transit_duration),
            _number(sailings),
        ]
        matches = {
            'origin': features[0], 'destination': features[1],
            'equipment': features[2], 'mode': features[3],
        }
        return artifact.predict_one(features), matches
