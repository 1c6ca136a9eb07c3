"""
Builds the lookup artifacts from rate spreadsheets:

* general-rates -> tiered rate table + geocoded operation towns
* freight-rates -> exact-match rate records + geocoded ports
"""
import logging

import pandas as pd

from ml_config import DEFAULT_EQUIPMENT, UNKNOWN_LOCATION
from errors import MissingColumnsError, PricingError, TrainingCancelled
from geocoding.geometry_utils import ReferenceLocation
from rate_lookup import RateCache, RateRecord, TieredRateRule, TieredRateTable, canonical_rate_type
from text_utils import extract_country_iso

logger = logging.getLogger(__name__)

# Spreadsheet header -> rule field
TIERED_RATE_HEADERS = {
    'Operation': 'operation',
    'Type': 'type',
    'Distance start': 'distance_start',
    'Distance end': 'distance_end',
    'Min. Value': 'min_value',
    'Max. Value': 'max_value',
    'Rate type': 'rate_type',
    'Flat rate in EUR': 'flat_rate',
    'Flexibel( rate per cbm)': 'flex_rate',
}
TIERED_NUMERIC = ['distance_start', 'distance_end', 'min_value', 'max_value', 'flat_rate', 'flex_rate']

RATE_RECORD_COLUMNS = ['origin_location', 'destination_location', 'cost_base_rate_amount']


def check_columns(headers, required):
    """Fails fast, before any expensive work, when columns are missing."""
    missing = [c for c in required if c not in headers]
    if missing:
        raise MissingColumnsError(missing)


def to_frame(rows, headers):
    """Rows may be ragged; short rows are padded, long rows truncated."""
    width = len(headers)
    fixed = [(list(r) + [None] * width)[:width] for r in rows]
    return pd.DataFrame(fixed, columns=list(headers))


def _clean_text(series):
    return series.map(lambda v: '' if v is None or (isinstance(v, float) and pd.isna(v)) else str(v).strip())


def build_tiered_table(rows, headers):
    check_columns(headers, list(TIERED_RATE_HEADERS))
    if not rows:
        raise PricingError("Dataset is empty!")

    df = to_frame(rows, headers)[list(TIERED_RATE_HEADERS)].rename(columns=TIERED_RATE_HEADERS)
    for col in TIERED_NUMERIC:
        df[col] = pd.to_numeric(df[col], errors='coerce').fillna(0).astype(float)
    for col in ['operation', 'type']:
        df[col] = _clean_text(df[col])
    df['rate_type'] = _clean_text(df['rate_type']).map(canonical_rate_type)

    rules = [TieredRateRule(**rec) for rec in df.to_dict('records')]
    logger.info("Cached %d tiered rate rules", len(rules))
    return TieredRateTable(rules)


def build_rate_cache(rows, headers):
    check_columns(headers, RATE_RECORD_COLUMNS)
    df = to_frame(rows, headers)
    if 'equipment_type' not in df.columns:
        df['equipment_type'] = None

    cost = pd.to_numeric(df['cost_base_rate_amount'], errors='coerce').fillna(0).astype(float)
    equipment = _clean_text(df['equipment_type']).replace('', DEFAULT_EQUIPMENT)
    origin = _clean_text(df['origin_location']).replace('', UNKNOWN_LOCATION)
    destination = _clean_text(df['destination_location']).replace('', UNKNOWN_LOCATION)

    records = [
        RateRecord(origin=o, destination=d, cost=c, equipment_type=e)
        for o, d, c, e in zip(origin, destination, cost, equipment)
    ]
    logger.info("Saved %d rate records", len(records))
    return RateCache(records)


def build_reference_locations(names, rate_category, resolver, existing=None, should_stop=None):
    """
    Geocodes unique location names into reference locations.
    Names already present in `existing` (same category) are reused without a
    geocoder call; names the geocoder can't place are skipped.
    """
    known = {}
    for loc in existing or []:
        if loc.rate_category == rate_category:
            known.setdefault(loc.name.strip().lower(), loc)

    unique = [n for n in dict.fromkeys(str(n).strip() for n in names if n is not None)
              if n and n != UNKNOWN_LOCATION]
    logger.info("Found %d unique %s locations", len(unique), rate_category)

    reused = [known[n.lower()] for n in unique if n.lower() in known]
    pending = [n for n in unique if n.lower() not in known]
    if reused:
        logger.info("Skipped %d locations already geocoded", len(reused))

    coords = resolver.resolve_many(pending, should_stop=should_stop) if pending else {}
    if should_stop and should_stop():
        raise TrainingCancelled("Training cancelled while geocoding")

    created = [
        ReferenceLocation(
            name=name,
            country=extract_country_iso(name),
            latitude=coords[name]['lat'],
            longitude=coords[name]['lng'],
            rate_category=rate_category,
        )
        for name in pending if name in coords
    ]
    logger.info("Geocoded %d new locations (%d skipped)", len(created), len(pending) - len(created))

    # Keep input order
    by_name = {loc.name.strip().lower(): loc for loc in reused + created}
    return [by_name[n.lower()] for n in unique if n.lower() in by_name]


def unique_ports(cache):
    names = []
    for r in cache.records:
        names.append(r.origin)
        names.append(r.destination)
    return names
