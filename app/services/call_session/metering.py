"""Credit metering rules."""
import math


def duration_credits(elapsed_sec: float, credits_per_minute: int) -> int:
    """Credits due for a call that has run ``elapsed_sec`` seconds.

    Started minutes are billed in full.
    """
    if elapsed_sec <= 0:
        return 0
    return math.ceil(elapsed_sec / 60) * credits_per_minute


def generation_credits(resource_units: int, unit_size: int) -> int:
    """Credits for one turn generation: resource units rounded up to whole units."""
    if resource_units <= 0:
        return 0
    return math.ceil(resource_units / unit_size)
