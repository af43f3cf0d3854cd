from therapy_backend import storage
from therapy_backend.models.waitlist import WaitlistEntry


def list_entries() -> list[WaitlistEntry]:
    return [WaitlistEntry.from_row(row) for row in storage.read_rows(storage.WAITLIST_FILE)]


def add_entry(entry: WaitlistEntry) -> WaitlistEntry:
    storage.append_row(storage.WAITLIST_FILE, entry.to_row())
    return entry


def update_entry(waitlist_id: str, status: str, notes: str | None = None) -> WaitlistEntry | None:
    with storage.ledger_lock:
        entries = list_entries()
        updated = None
        for index, entry in enumerate(entries):
            if entry.waitlist_id == waitlist_id:
                changes = {'status': status}
                if notes is not None:
                    changes['notes'] = notes
                updated = entry.model_copy(update=changes)
                entries[index] = updated
                break

        if updated is None:
            return None
        storage.write_rows(storage.WAITLIST_FILE, [entry.to_row() for entry in entries])
    return updated


def delete_entry(waitlist_id: str) -> bool:
    with storage.ledger_lock:
        entries = list_entries()
        kept = [entry for entry in entries if entry.waitlist_id != waitlist_id]
        if len(kept) == len(entries):
            return False
        storage.write_rows(storage.WAITLIST_FILE, [entry.to_row() for entry in kept])
    return True
