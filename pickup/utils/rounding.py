"""
Rounding helper shared by the rating, reliability and distance display rules.
"""

import math


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer, halves away from negative infinity.

    Python's round() uses banker's rounding (round(66.5) == 66); ratings and
    reliability scores are always rounded with .5 going up.
    """
    return int(math.floor(value + 0.5))
