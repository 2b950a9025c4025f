"""
Constants used across the rating, reliability and check-in rules.
"""

# Elo rating constants
K = 32  # K-factor applied to every player in a match
INITIAL_RATING = 1200
RATING_SCALE = 400  # Rating difference that makes a side 10x more likely to win

# Reliability constants
INITIAL_RELIABILITY = 100
MAX_RELIABILITY = 100
NO_SHOW_PENALTY_MULTIPLIER = 0.95  # 5% reduction per missed game

# Check-in constants
CHECK_IN_RADIUS_METERS = 500
CHECK_IN_WINDOW_MINUTES = 15

# Game creation constants
MIN_PLAYERS = 2
RECURRENCE_MAX_LOOKAHEAD_DAYS = 30  # Never spawn a recurring game further out than this

# Rating tiers: (exclusive upper bound, name); anything above the last bound is Grandmaster
RATING_TIERS = [
    (1000, "Bronze"),
    (1200, "Silver"),
    (1400, "Gold"),
    (1600, "Platinum"),
    (1800, "Diamond"),
    (2000, "Master"),
]
TOP_TIER = "Grandmaster"
