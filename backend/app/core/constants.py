"""Application-wide constants for the KitchenHub booking core."""

from __future__ import annotations

BRAND_NAME = "KitchenHub"

# Webhook ledger sources
WEBHOOK_SOURCE_STRIPE = "stripe"

# Text constraints
MAX_REASON_LENGTH = 1000
MAX_NOTES_LENGTH = 2000

# Query limits
DEFAULT_QUERY_LIMIT = 100
SWEEP_BATCH_LIMIT = 500

# Seconds in a calendar day, used for ceil-day arithmetic on UTC instants
SECONDS_PER_DAY = 86_400

# API metadata
API_TITLE = f"{BRAND_NAME} Booking Core"
API_DESCRIPTION = (
    "Kitchen, storage and equipment booking ledger with payment holds, "
    "cancellation policy, checkout verification and overstay penalties."
)
API_VERSION = "1.0.0"
