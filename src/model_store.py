"""
Durable artifacts per dataset kind and the in-memory cache that serves them.

Every artifact is written whole through AtomicModelSaver (temp file + rename)
and replaced wholesale by the next successful training run. A training run
stages all of its files first and renames them only once every write has
succeeded. There is no versioning beyond "current file on disk".
"""
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List

import numpy as np

from ml_config import FREIGHT_RATES, GENERAL_RATES, MODEL_DIR
from errors import ArtifactError, NoModelAvailableError
from geocoding.geometry_utils import ReferenceLocation
from ml_utils import AtomicModelSaver, FrequencyEncoder
from rate_lookup import RateCache, RateRecord, TieredRateRule, TieredRateTable

logger = logging.getLogger(__name__)

ARTIFACT_FILES = {
    'tiered_rates': 'tiered_rates.json',
    'domestic_locations': 'domestic_locations.json',
    'rate_cache': 'rates_cache.json',
    'freight_locations': 'freight_locations.json',
    'ensemble': 'freight_ensemble.joblib',
    'linear': 'freight_linear.json',
    'metadata': 'training_metadata.json',
}

ARTIFACT_DATASET = {
    'tiered_rates': GENERAL_RATES,
    'domestic_locations': GENERAL_RATES,
    'rate_cache': FREIGHT_RATES,
    'freight_locations': FREIGHT_RATES,
    'ensemble': FREIGHT_RATES,
    'linear': FREIGHT_RATES,
}

LINEAR_COLUMNS = ['origin_location', 'destination_location', 'equipment_type', 'trade_lane', 'mode']
ENSEMBLE_CATEGORICAL = ['origin', 'destination', 'equipment', 'mode']
ENSEMBLE_NUMERIC = ['transit_duration', 'sailings']


def _now():
    return datetime.now(timezone.utc).isoformat()


def _require_keys(doc, keys, name):
    if not isinstance(doc, dict):
        raise ArtifactError(f"{name}: expected an object, got {type(doc).__name__}")
    missing = [k for k in keys if k not in doc]
    if missing:
        raise ArtifactError(f"{name}: missing keys {missing}")


@dataclass
class LinearModelArtifact:
    columns: List[str]
    vocabularies: Dict[str, List[str]]
    coef: List[float]
    intercept: float

    def predict_one(self, features):
        return float(np.dot(np.asarray(self.coef, dtype=float), np.asarray(features, dtype=float)) + self.intercept)

    def to_document(self):
        return {
            'kind': 'linear-model',
            'dataset': FREIGHT_RATES,
            'created_at': _now(),
            'columns': self.columns,
            'encoders': self.vocabularies,
            'coef': [float(c) for c in self.coef],
            'intercept': float(self.intercept),
        }

    @classmethod
    def from_document(cls, doc):
        _require_keys(doc, ['columns', 'encoders', 'coef', 'intercept'], 'linear model')
        columns, encoders, coef = doc['columns'], doc['encoders'], doc['coef']
        if not isinstance(encoders, dict) or any(c not in encoders for c in columns):
            raise ArtifactError("linear model: an encoder is missing for one of its columns")
        if not isinstance(coef, list) or len(coef) != len(columns):
            raise ArtifactError(f"linear model: {len(columns)} columns but {len(coef) if isinstance(coef, list) else 'no'} coefficients")
        try:
            return cls(
                columns=list(columns),
                vocabularies={c: [str(v) for v in encoders[c]] for c in columns},
                coef=[float(c) for c in coef],
                intercept=float(doc['intercept']),
            )
        except (TypeError, ValueError) as e:
            raise ArtifactError(f"linear model: {e}") from e


@dataclass
class EnsembleModelArtifact:
    models: list
    encoder: FrequencyEncoder
    metrics: dict = field(default_factory=dict)

    def predict_one(self, features):
        """Equal-weight mean of every sub-model's prediction."""
        x = np.asarray([features], dtype=float)
        predictions = [float(m.predict(x)[0]) for m in self.models]
        return sum(predictions) / len(predictions)

    def predict_many(self, X):
        """Row-wise equal-weight mean, one predict() call per sub-model."""
        X = np.asarray(X, dtype=float)
        return np.mean([m.predict(X) for m in self.models], axis=0)

    def to_document(self):
        return {
            'kind': 'ensemble-model',
            'dataset': FREIGHT_RATES,
            'created_at': _now(),
            'models': self.models,
            'encoders': self.encoder.vocabularies_,
            'metrics': self.metrics,
        }

    @classmethod
    def from_document(cls, doc):
        _require_keys(doc, ['models', 'encoders'], 'ensemble model')
        models, encoders = doc['models'], doc['encoders']
        if not isinstance(models, list) or not models:
            raise ArtifactError("ensemble model: no sub-models")
        if any(not hasattr(m, 'predict') for m in models):
            raise ArtifactError("ensemble model: sub-model without predict()")
        if not isinstance(encoders, dict) or any(c not in encoders for c in ENSEMBLE_CATEGORICAL):
            raise ArtifactError(f"ensemble model: encoders must cover {ENSEMBLE_CATEGORICAL}")
        return cls(
            models=models,
            encoder=FrequencyEncoder.from_vocabularies({c: encoders[c] for c in ENSEMBLE_CATEGORICAL}),
            metrics=doc.get('metrics') or {},
        )


class ArtifactStore:
    """Fixed logical path per artifact under one model directory."""

    def __init__(self, model_dir=MODEL_DIR):
        self.model_dir = model_dir

    def path(self, name):
        return os.path.join(self.model_dir, ARTIFACT_FILES[name])

    # --- writers ---

    def _write_json(self, document, name):
        AtomicModelSaver.save_json(document, self.path(name))

    def _write_joblib(self, obj, name):
        AtomicModelSaver.save(obj, self.path(name))

    @contextmanager
    def staged(self):
        """
        Yields a store whose writes only become visible when the block exits
        cleanly; on error every staged temp file is dropped and the current
        artifacts are left as they were.
        """
        batch = StagedArtifactStore(self.model_dir)
        try:
            yield batch
        except BaseException:
            AtomicModelSaver.discard(batch.pending)
            raise
        AtomicModelSaver.commit(batch.pending)

    def save_tiered_table(self, table):
        self._write_json({
            'kind': 'tiered-rates',
            'dataset': GENERAL_RATES,
            'created_at': _now(),
            'rates': [r.to_dict() for r in table.rules],
        }, 'tiered_rates')

    def save_rate_cache(self, cache):
        self._write_json({
            'kind': 'rate-records',
            'dataset': FREIGHT_RATES,
            'created_at': _now(),
            'records': [r.to_dict() for r in cache.records],
        }, 'rate_cache')

    def save_locations(self, name, locations):
        self._write_json({
            'kind': 'reference-locations',
            'dataset': ARTIFACT_DATASET[name],
            'created_at': _now(),
            'locations': [loc.to_dict() for loc in locations],
        }, name)

    def save_linear(self, artifact):
        self._write_json(artifact.to_document(), 'linear')

    def save_ensemble(self, artifact):
        self._write_joblib(artifact.to_document(), 'ensemble')

    def save_metadata(self, dataset_kind, metadata):
        doc = self.load_metadata()
        doc[dataset_kind] = metadata
        self._write_json(doc, 'metadata')

    # --- readers: None when absent, ArtifactError when malformed ---

    def _load_json(self, name):
        path = self.path(name)
        try:
            return AtomicModelSaver.load_json(path)
        except ValueError as e:
            raise ArtifactError(f"{path}: not valid JSON ({e})") from e

    def _rows(self, name, key, factory):
        doc = self._load_json(name)
        if doc is None:
            return None
        _require_keys(doc, [key], name)
        if not isinstance(doc[key], list):
            raise ArtifactError(f"{name}: '{key}' must be a list")
        try:
            return [factory(d) for d in doc[key]]
        except (KeyError, TypeError, ValueError) as e:
            raise ArtifactError(f"{name}: malformed entry ({e!r})") from e

    def load_tiered_table(self):
        rules = self._rows('tiered_rates', 'rates', TieredRateRule.from_dict)
        return None if rules is None else TieredRateTable(rules)

    def load_rate_cache(self):
        records = self._rows('rate_cache', 'records', RateRecord.from_dict)
        return None if records is None else RateCache(records)

    def load_locations(self, name):
        return self._rows(name, 'locations', ReferenceLocation.from_dict)

    def load_linear(self):
        doc = self._load_json('linear')
        return None if doc is None else LinearModelArtifact.from_document(doc)

    def load_ensemble(self):
        path = self.path('ensemble')
        try:
            doc = AtomicModelSaver.load(path)
        except Exception as e:
            raise ArtifactError(f"{path}: unreadable ({e})") from e
        return None if doc is None else EnsembleModelArtifact.from_document(doc)

    def load_metadata(self):
        doc = self._load_json('metadata')
        return doc if isinstance(doc, dict) else {}


class StagedArtifactStore(ArtifactStore):
    """Writes land in temp files beside their targets until committed."""

    def __init__(self, model_dir=MODEL_DIR):
        super().__init__(model_dir)
        self.pending = []

    def _write_json(self, document, name):
        path = self.path(name)
        self.pending.append((AtomicModelSaver.write_json_tmp(document, path), path))

    def _write_joblib(self, obj, name):
        path = self.path(name)
        self.pending.append((AtomicModelSaver.write_tmp(obj, path), path))


class ModelCache:
    """
    Lazily loaded artifacts shared by concurrent requests.

    Readers take the current snapshot without locking. Loads and
    invalidation happen under a lock and publish a new dict, so a reader
    never sees a half-updated snapshot and in-flight requests keep the
    artifact they started with.
    """

    def __init__(self, store):
        self.store = store
        self._snapshot = {}
        self._lock = threading.Lock()
        self._loaders = {
            'tiered_rates': store.load_tiered_table,
            'rate_cache': store.load_rate_cache,
            'domestic_locations': lambda: store.load_locations('domestic_locations'),
            'freight_locations': lambda: store.load_locations('freight_locations'),
            'linear': store.load_linear,
            'ensemble': store.load_ensemble,
        }

    def get(self, name):
        snapshot = self._snapshot
        if name in snapshot:
            return snapshot[name]

        with self._lock:
            snapshot = self._snapshot
            if name in snapshot:
                return snapshot[name]
            logger.info("Loading artifact %s from %s", name, self.store.model_dir)
            value = self._loaders[name]()  # ArtifactError propagates, nothing cached
            updated = dict(snapshot)
            updated[name] = value
            self._snapshot = updated
            return value

    def require(self, name):
        value = self.get(name)
        if value is None:
            raise NoModelAvailableError(f"No trained {name} artifact available. Train first.")
        return value

    def invalidate(self):
        with self._lock:
            self._snapshot = {}
        logger.info("Model cache invalidated")
