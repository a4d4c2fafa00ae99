"""
Constants for the Lot Tracker application.

This module defines all system-wide constants including:
- Application metadata
- Station identifiers and station groups
- Lot number format rules
- Reserved identifiers (unassigned order, reject area)
- Validation limits and error messages
"""

from typing import List

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Lot Tracker"
APP_VERSION = "0.1.0"
DATABASE_VERSION = "1.0"

# ============================================================================
# Stations
# ============================================================================

# Primary forming stations whose output always goes to rework (finishing group A)
FINISHING_GROUP_STATIONS: List[str] = [
    "BH16",
    "BH18",
    "BH31",
]

# Primary forming stations whose output depends on the item (primary group B)
PRIMARY_GROUP_STATIONS: List[str] = [
    "BH11",
    "BH12",
    "BH15",
    "BH17",
]

# Post-processing and inspection stations
STATION_MAZAK = "MAZAK"
STATION_NABEWERKING = "NABEWERKING"
STATION_FINAL_INSPECTION = "BM01"

# Pseudo stations (not physical machines)
STATION_FINISHED = "GEREED"
STATION_REJECT_AREA = "AFKEUR"

POST_PROCESSING_STATIONS: List[str] = [STATION_MAZAK, STATION_NABEWERKING]

# Items whose descriptor starts with this prefix are routed to the Mazak
MAZAK_ITEM_PREFIX = "FL"

# ============================================================================
# Orders
# ============================================================================

# Order id carried by overproduced units until they are reassigned
UNASSIGNED_ORDER_ID = "NOG_TE_BEPALEN"

DEFAULT_ACTOR = "Operator"

# ============================================================================
# Lot Numbers
# ============================================================================

# Format: 40{YY}{WW}{station code}40{sequence}
LOT_PREFIX_LEAD = "40"
LOT_PREFIX_TAIL = "40"
DEFAULT_STATION_CODE = "400"
STATION_CODE_LENGTH = 3
LOT_SEQUENCE_DIGITS = 4
MAX_LOT_SEQUENCE = 10**LOT_SEQUENCE_DIGITS - 1

# Attempts before the allocator gives up on a prefix
MAX_ALLOCATION_ATTEMPTS = 10

# ============================================================================
# Rework Monitoring
# ============================================================================

DEFAULT_OVERDUE_REWORK_DAYS = 7
DEFAULT_MONITOR_INTERVAL_SECONDS = 3600

# ============================================================================
# Validation Constants
# ============================================================================

MAX_STATION_LENGTH = 50
MAX_ORDER_ID_LENGTH = 64
MAX_ITEM_CODE_LENGTH = 100
MAX_ITEM_LENGTH = 500
MAX_NOTES_LENGTH = 2000
MAX_START_BATCH = 500

# ============================================================================
# Database Constants
# ============================================================================

DATABASE_FILENAME = "lot_tracker.db"

TABLE_PRODUCTION_UNIT = "production_units"
TABLE_UNIT_HISTORY = "unit_history"
TABLE_ORDER = "orders"
TABLE_ORDER_STATION_COUNTER = "order_station_counters"
TABLE_LOT_SEQUENCE = "lot_sequences"
TABLE_NOTIFICATION = "notifications"

# ============================================================================
# Error Messages
# ============================================================================

ERROR_REQUIRED_FIELD = "This field is required"
ERROR_INVALID_POSITIVE = "Must be a positive number"
ERROR_INVALID_NON_NEGATIVE = "Must be zero or a positive number"
ERROR_TOO_LONG = "Value is too long"
