"""Admin-facing patient profiles kept in data/patients.json."""

from therapy_backend import storage
from therapy_backend.models.fields import utcnow
from therapy_backend.models.patient import PatientProfile


def list_patients() -> list[PatientProfile]:
    payload = storage.load_json(storage.PATIENTS_FILE, [])
    return [PatientProfile.model_validate(item) for item in payload if isinstance(item, dict)]


def _save(patients: list[PatientProfile]) -> None:
    storage.save_json(storage.PATIENTS_FILE, [patient.to_payload() for patient in patients])


def find_by_token(booking_token: str) -> PatientProfile | None:
    for patient in list_patients():
        if patient.booking_token == booking_token:
            return patient
    return None


def find_by_email(email: str) -> list[PatientProfile]:
    normalized = email.strip().lower()
    return [patient for patient in list_patients() if patient.email.strip().lower() == normalized]


def add_patient(patient: PatientProfile) -> PatientProfile:
    with storage.ledger_lock:
        patients = list_patients()
        patients.append(patient)
        _save(patients)
    return patient


def update_patient(booking_token: str, updated_by: str = 'Admin', **changes) -> PatientProfile | None:
    with storage.ledger_lock:
        patients = list_patients()
        updated = None
        for index, patient in enumerate(patients):
            if patient.booking_token == booking_token:
                now = utcnow()
                updated = patient.model_copy(
                    update={**changes, 'last_activity': now, 'last_updated': now, 'updated_by': updated_by}
                )
                patients[index] = updated
                break

        if updated is None:
            return None
        _save(patients)
    return updated


def delete_for_tokens(booking_tokens: set[str]) -> int:
    with storage.ledger_lock:
        patients = list_patients()
        kept = [patient for patient in patients if patient.booking_token not in booking_tokens]
        if len(kept) != len(patients):
            _save(kept)
    return len(patients) - len(kept)
