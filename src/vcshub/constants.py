"""Constants used throughout vcshub."""

# Version
VERSION = "0.1.0"

# Configuration
CONFIG_ENV_VAR = "VCSHUB_CONFIG"
DEFAULT_CONFIG_FILE = "vcshub.yaml"
DEFAULT_DB_FILE = "vcshub.db"

# Table names
TEAMS_TABLE = "teams"
PROJECTS_TABLE = "projects"
BRANCHES_TABLE = "branches"
LOCKS_TABLE = "branch_locks"
COMMITS_TABLE = "commits"

# Projects and branches
DEFAULT_BRANCH_NAME = "stable"
INITIAL_COMMIT_MESSAGE = "Initial commit"
INITIAL_COMMIT_INDEX = 1
SYSTEM_AUTHOR = ""
BRANCH_NAME_PATTERN = r"^[\w\-]+$"
MAX_NAME_LENGTH = 100

# Commit listing
DEFAULT_COMMIT_LIMIT = 10

# Multipart uploads (bytes)
MIB = 1024 * 1024
DEFAULT_PART_SIZE = 5 * MIB
MIN_PART_SIZE = 5 * MIB
MAX_PART_COUNT = 10_000
MULTIPART_RETENTION_HOURS = 24
MULTIPART_RETENTION_DAYS = 1  # lifecycle rules are expressed in days
PRESIGN_WORKERS = 8

# Presigned URLs
PRESIGN_EXPIRES_SECONDS = 3600

# Timeouts (seconds)
DB_TIMEOUT_SECONDS = 5.0
STORAGE_CONNECT_TIMEOUT_SECONDS = 10.0
STORAGE_READ_TIMEOUT_SECONDS = 60.0
STORAGE_MAX_ATTEMPTS = 3

# Garbage collection
GC_DELETE_BATCH_SIZE = 1000  # S3 DeleteObjects limit
GC_GRACE_PERIOD_SECONDS = 3600
GC_LIST_PAGE_SIZE = 1000

# Database schema version
DB_SCHEMA_VERSION = 1
