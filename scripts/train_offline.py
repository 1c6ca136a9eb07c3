import os
import sys
import argparse
import logging

import pandas as pd

# Setup paths
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(os.path.join(PROJECT_ROOT, 'src'))

from ml_config import DATASET_KINDS, MODEL_DIR
from errors import PricingError
from training_manager import TrainingOptions, execute_training

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def read_table(path):
    """CSV -> (headers, rows) with every cell as text, blanks as None."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    rows = [[v if v != '' else None for v in row] for row in df.itertuples(index=False, name=None)]
    return list(df.columns), rows


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train rate artifacts from a CSV export")
    parser.add_argument('dataset_kind', choices=DATASET_KINDS)
    parser.add_argument('csv_path')
    parser.add_argument('--model-dir', default=MODEL_DIR)
    parser.add_argument('--no-geocode', action='store_true', help="Skip geocoding reference locations")
    parser.add_argument('--strategies', default='ensemble,linear',
                        help="Comma separated freight strategies (ensemble, linear)")
    args = parser.parse_args(argv)

    logging.info("--- Starting Offline Training (%s) ---", args.dataset_kind)
    headers, rows = read_table(args.csv_path)
    logging.info("Read %d rows from %s", len(rows), args.csv_path)

    options = TrainingOptions(
        geocode_locations=not args.no_geocode,
        strategies=tuple(s.strip() for s in args.strategies.split(',') if s.strip()),
    )
    try:
        metrics = execute_training(rows, headers, args.dataset_kind, args.model_dir, options)
    except PricingError as e:
        logging.error("Training failed: %s", e)
        return 1

    logging.info("Metrics: %s", metrics)
    logging.info("--- Offline Training Successful ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
