import logging
import math
import time

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import LinearRegression
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

from ml_config import (
    CHUNK_SIZE,
    DEFAULT_LINEAR_MODE,
    DEFAULT_TRADE_LANE,
    FOREST_MAX_DEPTH,
    FOREST_N_ESTIMATORS,
    FOREST_RANDOM_STATE,
    TRAIN_FRACTION,
    UNKNOWN_LOCATION,
)
from errors import PricingError, TrainingCancelled
from ml_utils import FrequencyEncoder, first_seen_vocabulary
from model_store import (
    ENSEMBLE_CATEGORICAL,
    ENSEMBLE_NUMERIC,
    LINEAR_COLUMNS,
    EnsembleModelArtifact,
    LinearModelArtifact,
)
from train_rates_model import check_columns, to_frame

logger = logging.getLogger(__name__)

TARGET = 'cost_base_rate_amount'

# Source column -> ensemble feature
ENSEMBLE_SOURCE = {
    'origin_location': 'origin',
    'destination_location': 'destination',
    'equipment_type': 'equipment',
    'mode': 'mode',
}
ENSEMBLE_REQUIRED = list(ENSEMBLE_SOURCE) + [TARGET]
LINEAR_REQUIRED = ['origin_location', 'destination_location', 'equipment_type', TARGET]

LINEAR_FILL = {
    'origin_location': UNKNOWN_LOCATION,
    'destination_location': UNKNOWN_LOCATION,
    'equipment_type': UNKNOWN_LOCATION,
    'trade_lane': DEFAULT_TRADE_LANE,
    'mode': DEFAULT_LINEAR_MODE,
}


def _numeric(df, col):
    if col not in df.columns:
        return pd.Series(0.0, index=df.index)
    return pd.to_numeric(df[col], errors='coerce').fillna(0).astype(float)


def _filled_text(df, col, default):
    if col not in df.columns:
        return pd.Series(default, index=df.index)
    return df[col].map(lambda v: default if v is None or (isinstance(v, float) and np.isnan(v))
                       or str(v).strip() == '' else str(v))


def regression_metrics(y_true, y_pred):
    if len(y_true) == 0:
        return {}
    metrics = {
        'rmse': float(math.sqrt(mean_squared_error(y_true, y_pred))),
        'mae': float(mean_absolute_error(y_true, y_pred)),
    }
    if len(y_true) >= 2:
        metrics['r2'] = float(r2_score(y_true, y_pred))
    return metrics


def chunk_bounds(n_rows, chunk_size=CHUNK_SIZE):
    """Contiguous [start, end) ranges covering n_rows."""
    return [(start, min(start + chunk_size, n_rows)) for start in range(0, n_rows, chunk_size)]


def train_ensemble(rows, headers, chunk_size=CHUNK_SIZE, should_stop=None):
    """
    One random forest per contiguous chunk of the training split.

    Chunks are never merged back into a single fit; each sub-model sees at
    most chunk_size rows.
    """
    logger.info("--- Starting Ensemble Model Training ---")
    check_columns(headers, ENSEMBLE_REQUIRED)
    if not rows:
        raise PricingError("Dataset is empty!")

    df = to_frame(rows, headers)
    logger.info("Loaded dataset with %d rows and %d columns", len(df), len(headers))

    # Features & Target
    raw = pd.DataFrame({feat: _filled_text(df, src, '')
                        for src, feat in ENSEMBLE_SOURCE.items()})
    encoder = FrequencyEncoder(cols=ENSEMBLE_CATEGORICAL).fit(raw)
    X = encoder.transform(raw)
    transit_col, sailings_col = ENSEMBLE_NUMERIC
    X[transit_col] = _numeric(df, 'time_transit_duration')
    X[sailings_col] = _numeric(df, 'number_of_sailings')
    y = _numeric(df, TARGET)

    # Ordered split, no shuffle
    train_size = int(math.floor(TRAIN_FRACTION * len(X)))
    if train_size < 1:
        raise PricingError(f"Not enough rows to train ({len(X)})")
    X_values = X.to_numpy(dtype=float)
    X_train, y_train = X_values[:train_size], y.to_numpy()[:train_size]
    X_test, y_test = X_values[train_size:], y.to_numpy()[train_size:]
    logger.info("Train size: %d, Test size: %d", len(X_train), len(X_test))

    bounds = chunk_bounds(len(X_train), chunk_size)
    sub_models = []
    for i, (start, end) in enumerate(bounds):
        if should_stop and should_stop():
            raise TrainingCancelled(f"Training cancelled after {i}/{len(bounds)} chunks")
        logger.info("Training chunk %d/%d (%d samples)...", i + 1, len(bounds), end - start)
        t0 = time.time()
        rf = RandomForestRegressor(
            n_estimators=FOREST_N_ESTIMATORS,
            max_depth=FOREST_MAX_DEPTH,
            max_features=None,
            random_state=FOREST_RANDOM_STATE,
        )
        rf.fit(X_train[start:end], y_train[start:end])
        logger.info("Chunk %d trained in %.1fs", i + 1, time.time() - t0)
        sub_models.append(rf)

    artifact = EnsembleModelArtifact(models=sub_models, encoder=encoder)

    metrics = {'rows': len(X), 'sub_models': len(sub_models)}
    if len(X_test):
        preds = artifact.predict_many(X_test)
        metrics.update(regression_metrics(y_test, preds))
        logger.info("[METRIC] Ensemble holdout: %s", metrics)
    artifact.metrics = metrics
    return artifact, metrics


def train_linear(rows, headers):
    """Linear regression over first-seen vocabulary indices of five columns."""
    logger.info("--- Starting Linear Model Training ---")
    check_columns(headers, LINEAR_REQUIRED)
    if not rows:
        raise PricingError("Dataset is empty!")

    df = to_frame(rows, headers)
    vocabularies, encoded = {}, {}
    for col in LINEAR_COLUMNS:
        values = _filled_text(df, col, LINEAR_FILL[col])
        vocab = first_seen_vocabulary(values)
        index = {v: i for i, v in enumerate(vocab)}
        vocabularies[col] = vocab
        encoded[col] = values.map(index).astype(int)
        logger.info("Encoded column: %s (%d unique)", col, len(vocab))

    X = pd.DataFrame(encoded)[LINEAR_COLUMNS].to_numpy(dtype=float)
    y = _numeric(df, TARGET).to_numpy()

    model = LinearRegression()
    model.fit(X, y)

    metrics = {'rows': len(X)}
    metrics.update(regression_metrics(y, model.predict(X)))
    logger.info("[METRIC] Linear training fit: %s", metrics)

    artifact = LinearModelArtifact(
        columns=list(LINEAR_COLUMNS),
        vocabularies=vocabularies,
        coef=[float(c) for c in model.coef_],
        intercept=float(model.intercept_),
    )
    return artifact, metrics
