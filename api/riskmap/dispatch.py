"""Response-time arithmetic for dispatch records (HH:MM clock times)."""


def _minutes_since_midnight(clock: str) -> int:
    hours, minutes = clock.strip().split(":")
    hours, minutes = int(hours), int(minutes)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid clock time: {clock!r}")
    return hours * 60 + minutes


def response_minutes(dispatch: str, arrival: str) -> int:
    diff = _minutes_since_midnight(arrival) - _minutes_since_midnight(dispatch)
    # Arrival earlier than dispatch means the run crossed midnight
    if diff < 0:
        diff += 24 * 60
    return diff


def compute_response_time(dispatch: str, arrival: str) -> str:
    hours, minutes = divmod(response_minutes(dispatch, arrival), 60)
    if hours > 0:
        return f"{hours} hr {minutes} min"
    return f"{minutes} min"
