from therapy_backend import storage
from therapy_backend.models.availability import AvailabilityOverride


def list_overrides() -> list[AvailabilityOverride]:
    """Return overrides in file order; later rows win for the same slot."""
    return [AvailabilityOverride.from_row(row) for row in storage.read_rows(storage.AVAILABILITY_FILE)]


def add_overrides(overrides: list[AvailabilityOverride]) -> list[AvailabilityOverride]:
    with storage.ledger_lock:
        rows = storage.read_rows(storage.AVAILABILITY_FILE)
        rows.extend(override.to_row() for override in overrides)
        storage.write_rows(storage.AVAILABILITY_FILE, rows)
    return overrides


def remove_overrides(date: str, time: str | None = None) -> int:
    with storage.ledger_lock:
        overrides = list_overrides()
        kept = [
            override
            for override in overrides
            if not (override.date == date and (time is None or override.time == time))
        ]
        removed = len(overrides) - len(kept)
        if removed:
            storage.write_rows(storage.AVAILABILITY_FILE, [override.to_row() for override in kept])
    return removed
