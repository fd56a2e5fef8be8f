"""
Constants used across the match lifecycle and settlement system.
"""

# Roster capacity bounds at creation time
REGULAR_MIN_PLAYERS = 6
REGULAR_MAX_PLAYERS = 22
QUICK_MAX_PLAYERS = 1000

# Match duration bounds (minutes)
MIN_DURATION_MINUTES = 30
MAX_DURATION_MINUTES = 300

# Quick match defaults, filled in after play via complete-details
QUICK_MATCH_DEFAULT_CAPACITY = 100
QUICK_MATCH_DEFAULT_DURATION = 90
QUICK_MATCH_VENUE_NAME = "TBD"
QUICK_MATCH_VENUE_ADDRESS = "To be determined"

# Optimistic concurrency: attempts per load-mutate-save cycle
MATCH_SAVE_MAX_ATTEMPTS = 3

# Length of the public match code (upper-case hex)
MATCH_CODE_LENGTH = 8

DEFAULT_CURRENCY = "INR"
