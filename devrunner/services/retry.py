"""
DevRunner Retry Strategy

Pure decision functions for the per-iteration attempt budget.
"""

MAX_ITERATION_ATTEMPTS = 3


def should_pause_for_baby_step_checkpoint(
    baby_steps_enabled: bool,
    attempt: int,
    max_attempts: int = MAX_ITERATION_ATTEMPTS,
) -> bool:
    """
    In baby-step mode, pause after any failed attempt that still has budget left.

    The last attempt is left to the exhausted-attempts checkpoint instead.
    """
    if not baby_steps_enabled:
        return False
    if attempt <= 0:
        return False
    return attempt < max_attempts


def attempts_exhausted(attempt_count: int, max_attempts: int = MAX_ITERATION_ATTEMPTS) -> bool:
    """True when the next attempt would exceed the budget."""
    return attempt_count + 1 > max_attempts


def next_attempts(attempt_count: int, max_attempts: int = MAX_ITERATION_ATTEMPTS) -> range:
    """Attempt numbers still available after attempt_count attempts."""
    return range(max(attempt_count, 0) + 1, max_attempts + 1)
