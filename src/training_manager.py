
import logging
import queue
import threading
import time
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from ml_config import (
    CHUNK_SIZE,
    DATASET_KINDS,
    DOMESTIC_CATEGORY,
    FREIGHT_CATEGORY,
    FREIGHT_RATES,
    GENERAL_RATES,
    MODEL_DIR,
    TRAINING_EXECUTOR,
)
from errors import ArtifactError
from model_store import ArtifactStore
from train_freight_model import ENSEMBLE_REQUIRED, LINEAR_REQUIRED, train_ensemble, train_linear
from train_rates_model import (
    RATE_RECORD_COLUMNS,
    TIERED_RATE_HEADERS,
    build_rate_cache,
    build_reference_locations,
    build_tiered_table,
    check_columns,
    unique_ports,
)

logger = logging.getLogger(__name__)


@dataclass
class TrainingOptions:
    geocode_locations: bool = True
    strategies: tuple = ('ensemble', 'linear')
    chunk_size: int = CHUNK_SIZE


@dataclass
class TrainingEvent:
    dataset_kind: str
    success: bool
    metrics: dict = field(default_factory=dict)
    error: Optional[str] = None
    finished_at: str = field(default_factory=lambda: time.strftime("%Y-%m-%d %H:%M:%S"))


def required_columns(dataset_kind, options):
    if dataset_kind == GENERAL_RATES:
        return list(TIERED_RATE_HEADERS)
    required = list(RATE_RECORD_COLUMNS)
    if 'ensemble' in options.strategies:
        required += ENSEMBLE_REQUIRED
    if 'linear' in options.strategies:
        required += LINEAR_REQUIRED
    return list(dict.fromkeys(required))


def _existing_locations(store, name):
    try:
        return store.load_locations(name)
    except ArtifactError as e:
        logger.warning("Ignoring unreadable %s: %s", name, e)
        return None


def _geocoder(resolver):
    if resolver is None:
        # Built inside the worker, so process pools never pickle a live session
        from geocoding.resolver import GeoResolver
        resolver = GeoResolver()
    return resolver


def _train_general_rates(rows, headers, store, options, resolver, should_stop, report):
    report(10, "Building tiered rate table...")
    table = build_tiered_table(rows, headers)

    locations = None
    if options.geocode_locations:
        report(30, "Geocoding operation towns...")
        locations = build_reference_locations(
            [r.operation for r in table.rules], DOMESTIC_CATEGORY, _geocoder(resolver),
            existing=_existing_locations(store, 'domestic_locations'), should_stop=should_stop,
        )

    # Nothing is written until every artifact of the run is built
    report(90, "Saving artifacts...")
    with store.staged() as staged:
        staged.save_tiered_table(table)
        if locations is not None:
            staged.save_locations('domestic_locations', locations)

    metrics = {'rules': len(table), 'operations': len(table.operations())}
    if locations is not None:
        metrics['locations'] = len(locations)
    return metrics


def _train_freight_rates(rows, headers, store, options, resolver, should_stop, report):
    report(5, "Building rate cache...")
    cache = build_rate_cache(rows, headers)

    locations = None
    if options.geocode_locations:
        report(15, "Geocoding ports...")
        locations = build_reference_locations(
            unique_ports(cache), FREIGHT_CATEGORY, _geocoder(resolver),
            existing=_existing_locations(store, 'freight_locations'), should_stop=should_stop,
        )

    metrics = {'records': len(cache)}
    ensemble = linear = None
    if 'ensemble' in options.strategies:
        report(40, "Training ensemble model...")
        ensemble, metrics['ensemble'] = train_ensemble(rows, headers, chunk_size=options.chunk_size,
                                                       should_stop=should_stop)
    if 'linear' in options.strategies:
        report(80, "Training linear model...")
        linear, metrics['linear'] = train_linear(rows, headers)

    report(90, "Saving artifacts...")
    with store.staged() as staged:
        staged.save_rate_cache(cache)
        if locations is not None:
            staged.save_locations('freight_locations', locations)
            metrics['locations'] = len(locations)
        if ensemble is not None:
            staged.save_ensemble(ensemble)
        if linear is not None:
            staged.save_linear(linear)
    return metrics


def execute_training(rows, headers, dataset_kind, model_dir=MODEL_DIR, options=None,
                     resolver=None, should_stop=None, progress=None):
    """
    Builds and persists every artifact for one dataset kind.
    Raises on any failure; artifacts from the previous run stay untouched
    unless the whole run succeeds.
    """
    options = options or TrainingOptions()
    report = progress or (lambda pct, msg: None)
    check_columns(headers, required_columns(dataset_kind, options))

    store = ArtifactStore(model_dir)
    started = time.time()
    if dataset_kind == GENERAL_RATES:
        metrics = _train_general_rates(rows, headers, store, options, resolver, should_stop, report)
    elif dataset_kind == FREIGHT_RATES:
        metrics = _train_freight_rates(rows, headers, store, options, resolver, should_stop, report)
    else:
        raise ValueError(f"Unknown dataset kind: {dataset_kind}")

    metrics['rows'] = len(rows)
    store.save_metadata(dataset_kind, {
        'timestamp': int(started),
        'training_date': time.strftime("%Y-%m-%d %H:%M:%S"),
        'duration_sec': round(time.time() - started, 1),
        'rows': len(rows),
        'metrics': metrics,
    })
    report(100, "Training successfully completed.")
    return metrics


class TrainingManager:
    """
    Runs training jobs one at a time on a dedicated worker, away from the
    threads serving estimates. Every job ends in a TrainingEvent, delivered
    to listeners, the event queue and the returned Future (in that order).
    """

    def __init__(self, store, resolver=None, executor=None, executor_kind=TRAINING_EXECUTOR):
        self.store = store
        self.resolver = resolver
        self.executor_kind = executor_kind
        if executor is not None:
            self.executor = executor
        elif executor_kind == 'process':
            self.executor = ProcessPoolExecutor(max_workers=1)
        else:
            self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='training')

        self.events = queue.Queue()
        self._listeners = []
        self._lock = threading.Lock()
        self._current_cancel = None

        self.status = "idle"  # idle, training, completed, failed
        self.progress = 0
        self.message = ""
        self.last_run = None

    def add_listener(self, callback):
        self._listeners.append(callback)

    def start_training_async(self, rows, headers, dataset_kind, options=None):
        """
        Queues a training job. Unknown kinds and missing columns are rejected
        here, before anything is queued.
        """
        if dataset_kind not in DATASET_KINDS:
            raise ValueError(f"Unknown dataset kind: {dataset_kind}")
        options = options or TrainingOptions()
        check_columns(headers, required_columns(dataset_kind, options))

        rows = [list(r) for r in rows]
        headers = list(headers)
        outer = Future()
        outer.set_running_or_notify_cancel()

        if self.executor_kind == 'process':
            # Progress and cancellation don't cross the process boundary
            self._update("training", 0, f"Training {dataset_kind}...")
            inner = self.executor.submit(execute_training, rows, headers, dataset_kind,
                                         self.store.model_dir, options)
            inner.add_done_callback(lambda f: self._complete(outer, dataset_kind, f))
        else:
            self.executor.submit(self._run_job, outer, rows, headers, dataset_kind, options,
                                 threading.Event())
        logger.info("Training job queued for %s (%d rows)", dataset_kind, len(rows))
        return outer

    def cancel(self):
        """
        Asks the running job to stop at its next checkpoint. Jobs still
        queued are not affected. Returns False when nothing is running.
        """
        with self._lock:
            stop = self._current_cancel
        if stop is None:
            return False
        stop.set()
        return True

    def get_status(self):
        return {
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "last_run": self.last_run
        }

    def shutdown(self, wait=True):
        self.executor.shutdown(wait=wait)

    def _update(self, status=None, progress=None, message=None):
        with self._lock:
            if status is not None:
                self.status = status
            if progress is not None:
                self.progress = progress
            if message is not None:
                self.message = message

    def _report(self, progress, message):
        self._update(progress=progress, message=message)
        logger.info("[%d%%] %s", progress, message)

    def _run_job(self, outer, rows, headers, dataset_kind, options, stop):
        with self._lock:
            self._current_cancel = stop
        self._update("training", 0, f"Training {dataset_kind}...")
        try:
            metrics = execute_training(rows, headers, dataset_kind, self.store.model_dir, options,
                                       resolver=self.resolver, should_stop=stop.is_set,
                                       progress=self._report)
            event = TrainingEvent(dataset_kind, True, metrics=metrics)
        except Exception as e:
            logger.exception("[TrainingManager] Failed: %s", e)
            event = TrainingEvent(dataset_kind, False, error=str(e))
        finally:
            with self._lock:
                self._current_cancel = None
        self._publish(outer, event)

    def _complete(self, outer, dataset_kind, inner):
        try:
            event = TrainingEvent(dataset_kind, True, metrics=inner.result())
        except Exception as e:
            logger.error("[TrainingManager] Failed: %s", e)
            event = TrainingEvent(dataset_kind, False, error=str(e))
        self._publish(outer, event)

    def _publish(self, outer, event):
        if event.success:
            self._update("completed", 100, "Training successfully completed.")
            self.last_run = event.finished_at
        else:
            self._update("failed", message=f"Error: {event.error}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Training listener failed")
        self.events.put(event)
        outer.set_result(event)
