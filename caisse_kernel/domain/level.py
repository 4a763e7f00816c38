"""
Severity level of a declaration.

Bands on the major amount (whole dinars)::

    amount < 20          -> 1
    20 <= amount < 200   -> 2
    200 <= amount <= 1000 -> 3
    amount > 1000        -> 4

A recurrence forces level 4.  The stored level is the higher of the
submitted level and the computed one, so a submitter can escalate but
never downgrade.
"""

LEVEL_MIN = 1
LEVEL_MAX = 4

BAND_2_FROM = 20
BAND_3_FROM = 200
BAND_3_UPTO = 1000


def banded_level(amount_major: int) -> int:
    """Level implied by the amount alone."""
    if amount_major < BAND_2_FROM:
        return 1
    if amount_major < BAND_3_FROM:
        return 2
    if amount_major <= BAND_3_UPTO:
        return 3
    return 4


def computed_level(amount_major: int, recurrence: bool) -> int:
    """Server-side level: 4 on recurrence, otherwise the amount band."""
    if recurrence:
        return LEVEL_MAX
    return banded_level(amount_major)


def resolve_level(submitted: int, amount_major: int, recurrence: bool) -> int:
    """Final level stored on the declaration."""
    return max(submitted, computed_level(amount_major, recurrence))
