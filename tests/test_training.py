import unittest
from unittest.mock import MagicMock, patch
import os
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor

# Add src to path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from errors import MissingColumnsError, PricingError, TrainingCancelled
from geocoding.geometry_utils import ReferenceLocation
from model_store import ArtifactStore
from rate_lookup import FLAT, VARIABLE
from train_freight_model import chunk_bounds, train_ensemble, train_linear
from train_rates_model import build_rate_cache, build_reference_locations, build_tiered_table
from training_manager import TrainingManager, TrainingOptions, execute_training

TIERED_HEADERS = ['Operation', 'Type', 'Distance start', 'Distance end', 'Min. Value', 'Max. Value',
                  'Rate type', 'Flat rate in EUR', 'Flexibel( rate per cbm)']
TIERED_ROWS = [
    ['NL-DOM', 'ORIGIN', '0', '50', '0', '100', 'FLAT', '150', ''],
    ['NL-DOM', 'ORIGIN', '50', '200', '0', '100', 'Variabel', '', '12'],
    ['BE-DOM', 'DESTINATION', '0', '100', '0', '50', 'FLAT', '90', None],
]

FREIGHT_HEADERS = ['origin_location', 'destination_location', 'equipment_type', 'trade_lane', 'mode',
                   'cost_base_rate_amount', 'time_transit_duration', 'number_of_sailings']
PORTS = ['Rotterdam, NL', 'Hamburg, DE', 'Antwerp, BE']
DESTINATIONS = ['Shanghai, CN', 'Ningbo, CN']


def freight_rows(n):
    rows = []
    for i in range(n):
        equipment = '40ft dry' if i % 2 else '20ft dry'
        cost = 1000 + 100 * (i % 3) + (500 if i % 2 else 0)
        rows.append([PORTS[i % 3], DESTINATIONS[i % 2], equipment, 'ASIA', 'Seafreight',
                     str(cost), str(30 + i % 5), '2'])
    return rows


def fake_resolver(known=None):
    known = known or {}
    resolver = MagicMock()
    resolver.resolve_many.side_effect = lambda names, should_stop=None: {
        n: known[n] for n in names if n in known}
    return resolver


class TestBuilders(unittest.TestCase):

    def test_tiered_table(self):
        table = build_tiered_table(TIERED_ROWS, TIERED_HEADERS)
        self.assertEqual(len(table), 3)
        self.assertEqual(table.rules[1].rate_type, VARIABLE)
        self.assertEqual(table.rules[0].flex_rate, 0)
        self.assertEqual(table.lookup(30, 40, 'ORIGIN', 'nl-dom').rate, 150)
        self.assertEqual(table.lookup(120, 5, 'ORIGIN', 'NL-DOM').rate, 60)
        self.assertEqual(table.operations(), ['NL-DOM', 'BE-DOM'])

    def test_missing_columns(self):
        with self.assertRaises(MissingColumnsError) as ctx:
            build_tiered_table(TIERED_ROWS, TIERED_HEADERS[:-2])
        self.assertEqual(ctx.exception.missing, ['Flat rate in EUR', 'Flexibel( rate per cbm)'])

    def test_empty_dataset(self):
        with self.assertRaises(PricingError):
            build_tiered_table([], TIERED_HEADERS)

    def test_rate_cache_defaults_equipment(self):
        cache = build_rate_cache([['Rotterdam, NL', 'Shanghai, CN', '1200.5']],
                                 ['origin_location', 'destination_location', 'cost_base_rate_amount'])
        self.assertEqual(cache.records[0].equipment_type, '20ft dry')
        self.assertEqual(cache.lookup_cost('Rotterdam, NL', 'Shanghai, CN', '20ft dry')['cost'], 1200.5)

    def test_reference_locations_reuse_existing(self):
        existing = [ReferenceLocation('Rotterdam, NL', 'NL', 51.9, 4.4, 'freight')]
        resolver = fake_resolver({'Hamburg, DE': {'lat': 53.5, 'lng': 9.9}})
        locations = build_reference_locations(
            ['Hamburg, DE', 'Rotterdam, NL', 'Atlantis', 'Hamburg, DE', None, 'UNKNOWN'],
            'freight', resolver, existing=existing)

        self.assertEqual([loc.name for loc in locations], ['Hamburg, DE', 'Rotterdam, NL'])
        self.assertEqual(locations[0].country, 'DE')
        resolver.resolve_many.assert_called_once()
        self.assertEqual(resolver.resolve_many.call_args[0][0], ['Hamburg, DE', 'Atlantis'])


class TestFreightModels(unittest.TestCase):

    def test_chunk_bounds(self):
        self.assertEqual(chunk_bounds(20000, 8000), [(0, 8000), (8000, 16000), (16000, 20000)])
        self.assertEqual(chunk_bounds(8000, 8000), [(0, 8000)])

    def test_ensemble_one_sub_model_per_chunk(self):
        artifact, metrics = train_ensemble(freight_rows(50), FREIGHT_HEADERS, chunk_size=12)
        # 40 training rows -> 12 + 12 + 12 + 4
        self.assertEqual(len(artifact.models), 4)
        self.assertEqual(metrics['sub_models'], 4)
        self.assertIn('rmse', metrics)
        self.assertIn('r2', metrics)
        self.assertEqual(artifact.encoder.vocabularies_['mode'], ['Seafreight'])

    def test_ensemble_cancellation(self):
        with self.assertRaises(TrainingCancelled):
            train_ensemble(freight_rows(50), FREIGHT_HEADERS, chunk_size=12, should_stop=lambda: True)

    def test_linear_first_seen_vocabularies(self):
        rows = freight_rows(30)
        rows[0][3] = ''  # missing trade lane
        artifact, metrics = train_linear(rows, FREIGHT_HEADERS)
        self.assertEqual(artifact.vocabularies['origin_location'], PORTS)
        self.assertEqual(artifact.vocabularies['trade_lane'], ['DEFAULT', 'ASIA'])
        self.assertEqual(len(artifact.coef), 5)
        self.assertEqual(metrics['rows'], 30)


class TestExecuteTraining(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ArtifactStore(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_general_rates(self):
        resolver = fake_resolver({'NL-DOM': {'lat': 52.0, 'lng': 4.5}})
        metrics = execute_training(TIERED_ROWS, TIERED_HEADERS, 'general-rates', self.tmp.name,
                                   resolver=resolver)
        self.assertEqual(metrics['rules'], 3)
        self.assertEqual(metrics['locations'], 1)
        self.assertEqual(len(self.store.load_tiered_table()), 3)
        self.assertEqual(self.store.load_locations('domestic_locations')[0].rate_category, 'domestic')
        self.assertEqual(self.store.load_metadata()['general-rates']['rows'], 3)

    def test_freight_rates(self):
        resolver = fake_resolver({p: {'lat': 50.0 + i, 'lng': 4.0} for i, p in enumerate(PORTS + DESTINATIONS)})
        options = TrainingOptions(chunk_size=20)
        metrics = execute_training(freight_rows(60), FREIGHT_HEADERS, 'freight-rates', self.tmp.name,
                                   options=options, resolver=resolver)
        self.assertEqual(metrics['ensemble']['sub_models'], 3)
        self.assertEqual(metrics['locations'], 5)
        self.assertIsNotNone(self.store.load_ensemble())
        self.assertIsNotNone(self.store.load_linear())
        self.assertEqual(self.store.load_rate_cache().lookup_cost('Rotterdam, NL', 'Shanghai, CN', '20ft dry')['cost'],
                         1000.0)

    def test_failure_keeps_previous_artifacts(self):
        options = TrainingOptions(geocode_locations=False)
        execute_training(TIERED_ROWS, TIERED_HEADERS, 'general-rates', self.tmp.name, options=options)
        with self.assertRaises(PricingError):
            execute_training([], TIERED_HEADERS, 'general-rates', self.tmp.name, options=options)
        self.assertEqual(len(self.store.load_tiered_table()), 3)

    def test_failed_save_keeps_every_previous_artifact(self):
        options = TrainingOptions(geocode_locations=False, chunk_size=20)
        execute_training(freight_rows(60), FREIGHT_HEADERS, 'freight-rates', self.tmp.name, options=options)

        rows = freight_rows(60)
        for row in rows:
            row[5] = str(float(row[5]) * 2)
        # rates_cache.json is staged before the ensemble, whose write fails
        with patch('ml_utils.joblib.dump', side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                execute_training(rows, FREIGHT_HEADERS, 'freight-rates', self.tmp.name, options=options)

        self.assertEqual(self.store.load_rate_cache().lookup_cost('Rotterdam, NL', 'Shanghai, CN', '20ft dry')['cost'],
                         1000.0)
        self.assertIsNotNone(self.store.load_ensemble())
        self.assertEqual([f for f in os.listdir(self.tmp.name) if f.endswith('.tmp')], [])

    def test_missing_columns_fail_before_any_work(self):
        resolver = fake_resolver()
        with self.assertRaises(MissingColumnsError):
            execute_training(freight_rows(10), FREIGHT_HEADERS[:2], 'freight-rates', self.tmp.name,
                             resolver=resolver)
        resolver.resolve_many.assert_not_called()
        self.assertEqual(os.listdir(self.tmp.name), [])


class TestTrainingManager(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ArtifactStore(self.tmp.name)
        self.manager = TrainingManager(self.store, resolver=fake_resolver(),
                                       executor=ThreadPoolExecutor(max_workers=1), executor_kind='thread')

    def tearDown(self):
        self.manager.shutdown()
        self.tmp.cleanup()

    def test_success_event(self):
        listener = MagicMock()
        self.manager.add_listener(listener)
        event = self.manager.start_training_async(TIERED_ROWS, TIERED_HEADERS, 'general-rates').result(timeout=30)

        self.assertTrue(event.success)
        self.assertEqual(event.dataset_kind, 'general-rates')
        self.assertEqual(event.metrics['rules'], 3)
        listener.assert_called_once_with(event)
        self.assertIs(self.manager.events.get_nowait(), event)
        status = self.manager.get_status()
        self.assertEqual(status['status'], 'completed')
        self.assertEqual(status['progress'], 100)
        self.assertIsNotNone(status['last_run'])

    def test_failure_event(self):
        event = self.manager.start_training_async([], TIERED_HEADERS, 'general-rates').result(timeout=30)
        self.assertFalse(event.success)
        self.assertIn('empty', event.error)
        self.assertEqual(self.manager.get_status()['status'], 'failed')
        self.assertIsNone(self.store.load_tiered_table())

    def test_rejected_before_queueing(self):
        with self.assertRaises(MissingColumnsError):
            self.manager.start_training_async(TIERED_ROWS, ['Operation'], 'general-rates')
        with self.assertRaises(ValueError):
            self.manager.start_training_async(TIERED_ROWS, TIERED_HEADERS, 'passenger-demand')
        self.assertEqual(self.manager.get_status()['status'], 'idle')

    def test_failing_listener_does_not_lose_event(self):
        self.manager.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        event = self.manager.start_training_async(TIERED_ROWS, TIERED_HEADERS, 'general-rates').result(timeout=30)
        self.assertTrue(event.success)

    def test_cancel_when_idle(self):
        self.assertFalse(self.manager.cancel())

    def test_cancel_stops_running_job_but_not_queued_one(self):
        started, release = threading.Event(), threading.Event()

        def resolve_many(names, should_stop=None):
            if not started.is_set():
                started.set()
                release.wait(timeout=30)
            return {}

        self.manager.resolver = MagicMock()
        self.manager.resolver.resolve_many.side_effect = resolve_many
        first = self.manager.start_training_async(TIERED_ROWS, TIERED_HEADERS, 'general-rates')
        self.assertTrue(started.wait(timeout=30))

        self.assertTrue(self.manager.cancel())
        # Queuing another job must not revoke the cancel request
        second = self.manager.start_training_async(TIERED_ROWS, TIERED_HEADERS, 'general-rates')
        release.set()

        first_event = first.result(timeout=30)
        self.assertFalse(first_event.success)
        self.assertIn('cancelled', first_event.error)
        self.assertTrue(second.result(timeout=30).success)
        self.assertEqual(len(self.store.load_tiered_table()), 3)


if __name__ == '__main__':
    unittest.main()
