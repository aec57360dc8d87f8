from decouple import config
from pathlib import Path

# Directory paths
DATA_DIR = Path(config('DATA_DIR', default='data'))
DATABASE_PATH = Path(config('DATABASE_PATH', default=str(DATA_DIR / 'geotour.db')))
OBJECT_STORE_DIR = Path(config('OBJECT_STORE_DIR', default=str(DATA_DIR / 'objects')))
OBJECT_STORE_BASE_URL = config('OBJECT_STORE_BASE_URL', default='')

# Upload limits
MAX_IMAGE_BYTES = config('MAX_IMAGE_BYTES', default=100 * 1024 * 1024, cast=int)
MAX_VIDEO_BYTES = config('MAX_VIDEO_BYTES', default=1024 * 1024 * 1024, cast=int)
STORAGE_MAX_ATTEMPTS = config('STORAGE_MAX_ATTEMPTS', default=3, cast=int)

# Concurrency limits
MAX_EXTRACTIONS_PER_TOUR = config('MAX_EXTRACTIONS_PER_TOUR', default=4, cast=int)
MAX_CONCURRENT_EXTRACTIONS = config('MAX_CONCURRENT_EXTRACTIONS', default=16, cast=int)
MAX_CONCURRENT_JOBS = config('MAX_CONCURRENT_JOBS', default=4, cast=int)

# Extraction retry policy
EXTRACTION_MAX_ATTEMPTS = config('EXTRACTION_MAX_ATTEMPTS', default=3, cast=int)
EXTRACTION_BACKOFF_SECONDS = config('EXTRACTION_BACKOFF_SECONDS', default=0.5, cast=float)
EXTRACTION_BACKOFF_MAX_SECONDS = config('EXTRACTION_BACKOFF_MAX_SECONDS', default=8.0, cast=float)
EXTRACTION_TIMEOUT_SECONDS = config('EXTRACTION_TIMEOUT_SECONDS', default=30.0, cast=float)
FFPROBE_BINARY = config('FFPROBE_BINARY', default='ffprobe')

# Placeholder markers sit here until the real coordinate is known
DEFAULT_PROVISIONAL_LATITUDE = config('DEFAULT_PROVISIONAL_LATITUDE', default=2.0469, cast=float)
DEFAULT_PROVISIONAL_LONGITUDE = config('DEFAULT_PROVISIONAL_LONGITUDE', default=45.3254, cast=float)
DEFAULT_VISIBILITY = config('DEFAULT_VISIBILITY', default='private')

# Validation constants
MIN_VALID_LATITUDE = -90.0
MAX_VALID_LATITUDE = 90.0
MIN_VALID_LONGITUDE = -180.0
MAX_VALID_LONGITUDE = 180.0
COORDINATE_PRECISION = 7

MEDIA_KINDS = ('image', 'video')
VISIBILITIES = ('private', 'public')

# Per-unit extraction statuses
UNIT_PENDING = 'pending'
UNIT_EXTRACTING = 'extracting'
UNIT_EXTRACTED = 'extracted'
UNIT_FAILED = 'failed'

# Placement entity kinds
ENTITY_PLACEHOLDER = 'placeholder'
ENTITY_FINAL = 'final'

# Processing job states and the transitions allowed between them
JOB_PENDING = 'pending'
JOB_EXTRACTING = 'extracting'
JOB_LINKING = 'linking'
JOB_COMMITTING = 'committing'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'

TERMINAL_JOB_STATES = frozenset({JOB_COMPLETED, JOB_FAILED})

JOB_TRANSITIONS = {
    JOB_PENDING: {JOB_EXTRACTING, JOB_FAILED},
    JOB_EXTRACTING: {JOB_LINKING, JOB_FAILED},
    JOB_LINKING: {JOB_COMMITTING, JOB_FAILED},
    JOB_COMMITTING: {JOB_COMPLETED, JOB_FAILED},
    JOB_COMPLETED: set(),
    JOB_FAILED: set(),
}

CANCELLED_REASON = 'cancelled'
