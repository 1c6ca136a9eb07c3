
# ML Configuration & Thresholds
import os

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
MODEL_DIR = os.environ.get('FREIGHT_MODEL_DIR', os.path.join(PROJECT_ROOT, 'models'))

# --- Dataset kinds ---
GENERAL_RATES = 'general-rates'   # tiered domestic rate tables
FREIGHT_RATES = 'freight-rates'   # port-to-port freight rates
DATASET_KINDS = (GENERAL_RATES, FREIGHT_RATES)

# Reference location categories
DOMESTIC_CATEGORY = 'domestic'  # operation towns for tiered rates
FREIGHT_CATEGORY = 'freight'    # ports for freight rates

# --- Fuzzy Matching ---
MATCH_DISTANCE_THRESHOLD = 0.35  # Max Levenshtein distance / longer length (inclusive)
MATCH_SUGGESTIONS = 3            # Candidates reported when a value can't be resolved

# --- Encoding ---
MAX_VOCAB_SIZE = 200             # Frequency cap for ensemble encoders (unseen -> 0)

# --- Ensemble Model ---
CHUNK_SIZE = 8000                # Rows per sub-model
TRAIN_FRACTION = 0.8             # Ordered split, no shuffle
FOREST_N_ESTIMATORS = 20
FOREST_MAX_DEPTH = 10
FOREST_RANDOM_STATE = None       # Sub-models may differ run to run

# --- Defaults for missing values ---
DEFAULT_EQUIPMENT = '20ft dry'
LARGE_EQUIPMENT = '40ft dry'
LARGE_EQUIPMENT_MIN_CBM = 33     # Volumes above this ship in a 40ft container
DEFAULT_TRADE_LANE = 'DEFAULT'
DEFAULT_LINEAR_MODE = 'SEA'
DEFAULT_ENSEMBLE_MODE = 'Seafreight'
UNKNOWN_LOCATION = 'UNKNOWN'
CURRENCY = 'EUR'

# --- Geocoding ---
GOOGLE_MAPS_API_KEY = os.environ.get('GOOGLE_MAPS_API_KEY', '')
GEOCODE_BASE_URL = 'https://maps.googleapis.com/maps/api'
GEOCODE_DELAY_SEC = float(os.environ.get('GEOCODE_DELAY_SEC', '0.3'))  # Between batch calls
GEOCODE_TIMEOUT_SEC = 10
GEOCODE_CACHE_TTL_SEC = 24 * 3600
GEOCODE_CACHE_CAPACITY = 1000
EARTH_RADIUS_KM = 6371

# --- Training ---
TRAINING_EXECUTOR = os.environ.get('TRAINING_EXECUTOR', 'thread')  # thread | process
