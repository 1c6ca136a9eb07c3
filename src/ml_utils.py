import json
import logging
import os
from collections import Counter

import joblib
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils.validation import check_is_fitted

from ml_config import MAX_VOCAB_SIZE

logger = logging.getLogger(__name__)


def first_seen_vocabulary(values):
    """Distinct values in order of first appearance (index = position)."""
    return list(dict.fromkeys(str(v) for v in values))


def frequency_capped_vocabulary(values, max_size=MAX_VOCAB_SIZE):
    """
    Distinct values by descending frequency, truncated to max_size.
    Equal counts keep first-appearance order.
    """
    counts = Counter(str(v) for v in values)
    ranked = sorted(counts.items(), key=lambda kv: -kv[1])
    return [v for v, _ in ranked[:max_size]]


class FrequencyEncoder(BaseEstimator, TransformerMixin):
    """
    Frequency-capped label encoder.
    Each column keeps its max_categories most frequent values, encoded as
    1..N in frequency order. Anything else (rare or unseen) encodes to 0.
    """
    def __init__(self, cols=None, max_categories=MAX_VOCAB_SIZE):
        self.cols = cols
        self.max_categories = max_categories

    def fit(self, X, y=None):
        df = X if isinstance(X, pd.DataFrame) else pd.DataFrame(X, columns=self.cols)
        cols = self.cols if self.cols is not None else list(df.columns)
        self.vocabularies_ = {
            col: frequency_capped_vocabulary(df[col].tolist(), self.max_categories)
            for col in cols
        }
        self._build_maps()
        return self

    @classmethod
    def from_vocabularies(cls, vocabularies, max_categories=MAX_VOCAB_SIZE):
        enc = cls(cols=list(vocabularies), max_categories=max_categories)
        enc.vocabularies_ = {col: [str(v) for v in vocab] for col, vocab in vocabularies.items()}
        enc._build_maps()
        return enc

    def _build_maps(self):
        self.maps_ = {
            col: {v: i + 1 for i, v in enumerate(vocab)}
            for col, vocab in self.vocabularies_.items()
        }

    def encode_value(self, col, value):
        check_is_fitted(self, 'maps_')
        return self.maps_[col].get(str(value), 0)

    def transform(self, X):
        check_is_fitted(self, 'maps_')
        out = X.copy() if isinstance(X, pd.DataFrame) else pd.DataFrame(X, columns=self.cols)
        for col, mapping in self.maps_.items():
            if col in out.columns:
                out[col] = out[col].astype(str).map(mapping).fillna(0).astype(int)
        return out


class AtomicModelSaver:
    """
    Saves artifacts atomically to prevent torn reads.

    write_tmp / write_json_tmp stage a file next to its target without
    touching it; commit() renames a group of staged files in one pass.
    """
    @staticmethod
    def _ensure_dir(filepath):
        dirname = os.path.dirname(filepath)
        if dirname and not os.path.exists(dirname):
            os.makedirs(dirname, exist_ok=True)

    @staticmethod
    def _remove(path):
        if os.path.exists(path):
            os.remove(path)

    @staticmethod
    def _replace(tmp_path, filepath):
        # os.replace is atomic on POSIX and on Windows since Python 3.3
        try:
            os.replace(tmp_path, filepath)
        except OSError:
            AtomicModelSaver._remove(tmp_path)
            raise
        logger.info("Saved artifact atomically: %s", filepath)

    @staticmethod
    def write_tmp(model, filepath):
        AtomicModelSaver._ensure_dir(filepath)
        tmp_path = filepath + ".tmp"
        try:
            joblib.dump(model, tmp_path)
        except Exception:
            AtomicModelSaver._remove(tmp_path)
            raise
        return tmp_path

    @staticmethod
    def write_json_tmp(document, filepath):
        AtomicModelSaver._ensure_dir(filepath)
        tmp_path = filepath + ".tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
        except Exception:
            AtomicModelSaver._remove(tmp_path)
            raise
        return tmp_path

    @staticmethod
    def commit(staged):
        """Renames each (tmp_path, filepath) pair; leftover temp files are removed on failure."""
        pending = list(staged)
        try:
            while pending:
                tmp_path, filepath = pending[0]
                AtomicModelSaver._replace(tmp_path, filepath)
                pending.pop(0)
        finally:
            AtomicModelSaver.discard(pending)

    @staticmethod
    def discard(staged):
        for tmp_path, _ in staged:
            AtomicModelSaver._remove(tmp_path)

    @staticmethod
    def save(model, filepath):
        """
        Saves to .tmp file then renames to target.
        """
        AtomicModelSaver._replace(AtomicModelSaver.write_tmp(model, filepath), filepath)

    @staticmethod
    def save_json(document, filepath):
        AtomicModelSaver._replace(AtomicModelSaver.write_json_tmp(document, filepath), filepath)

    @staticmethod
    def load(filepath):
        if not os.path.exists(filepath):
            return None
        return joblib.load(filepath)

    @staticmethod
    def load_json(filepath):
        if not os.path.exists(filepath):
            return None
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
