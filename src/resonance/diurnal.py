from __future__ import annotations

from datetime import datetime

from resonance.models import ActivityContext, TimeSlot

# Slot boundaries (inclusive start minute, inclusive end minute), local wall clock.
_SLOT_SCHEDULE: tuple[tuple[TimeSlot, int, int], ...] = (
    (TimeSlot.NIGHT, 0, 299),
    (TimeSlot.EARLY_MORNING, 300, 539),
    (TimeSlot.MORNING, 540, 719),
    (TimeSlot.MIDDAY, 720, 839),
    (TimeSlot.AFTERNOON, 840, 1019),
    (TimeSlot.EVENING, 1020, 1259),
    (TimeSlot.NIGHT, 1260, 1439),
)

_SUGGESTED_MAX_BPM: dict[TimeSlot, float] = {
    TimeSlot.EARLY_MORNING: 100.0,
    TimeSlot.MORNING: 130.0,
    TimeSlot.MIDDAY: 140.0,
    TimeSlot.AFTERNOON: 140.0,
    TimeSlot.EVENING: 120.0,
    TimeSlot.NIGHT: 90.0,
}

# Activity context guessed from the clock when no stronger signal exists.
_WEEKDAY_CONTEXT: tuple[tuple[ActivityContext, int, int], ...] = (
    (ActivityContext.PRE_SLEEP, 0, 299),
    (ActivityContext.MORNING, 300, 509),
    (ActivityContext.COMMUTE, 510, 569),
    (ActivityContext.WORK, 570, 719),
    (ActivityContext.SOCIAL, 720, 779),
    (ActivityContext.WORK, 780, 1049),
    (ActivityContext.COMMUTE, 1050, 1139),
    (ActivityContext.RELAXATION, 1140, 1319),
    (ActivityContext.PRE_SLEEP, 1320, 1439),
)

# Weekends start an hour later and have no work or commute blocks.
_WEEKEND_CONTEXT: tuple[tuple[ActivityContext, int, int], ...] = (
    (ActivityContext.PRE_SLEEP, 0, 359),
    (ActivityContext.MORNING, 360, 659),
    (ActivityContext.RELAXATION, 660, 1079),
    (ActivityContext.SOCIAL, 1080, 1379),
    (ActivityContext.PRE_SLEEP, 1380, 1439),
)


def _lookup(schedule, moment: datetime):
    minute_of_day = moment.hour * 60 + moment.minute
    for value, start_minute, end_minute in schedule:
        if start_minute <= minute_of_day <= end_minute:
            return value
    raise RuntimeError(f"Unsupported minute_of_day value: {minute_of_day}")


def get_time_slot(moment: datetime) -> TimeSlot:
    """Map a datetime to its deterministic time-of-day slot."""
    return _lookup(_SLOT_SCHEDULE, moment)


def suggested_max_bpm(slot: TimeSlot | str) -> float:
    try:
        return _SUGGESTED_MAX_BPM[TimeSlot(slot)]
    except ValueError:
        valid = ", ".join(item.value for item in TimeSlot)
        raise ValueError(f"Unknown time slot '{slot}'. Expected one of: {valid}") from None


def get_default_context(moment: datetime) -> ActivityContext:
    """Weekday/weekend-aware activity context for a moment with no other evidence."""
    schedule = _WEEKEND_CONTEXT if moment.weekday() >= 5 else _WEEKDAY_CONTEXT
    return _lookup(schedule, moment)
