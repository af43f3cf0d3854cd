import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from therapy_backend import storage
from therapy_backend.auth.dependencies import get_current_admin
from therapy_backend.core import config
from therapy_backend.ledgers import availability_ledger, waitlist_ledger
from therapy_backend.models.availability import AvailabilityOverride
from therapy_backend.models.waitlist import WaitlistEntry
from therapy_backend.routes.common import (
    bad_request,
    ensure_ledgers_ready,
    ledger_unavailable,
    parse_date_param,
    validate_date_string,
    validate_time_string,
)
from therapy_backend.services.availability import iterate_dates

logger = logging.getLogger(__name__)

router = APIRouter(tags=['admin'])

AVAILABILITY_ACTIONS = {
    'block_slot',
    'unblock_slot',
    'block_day',
    'block_vacation',
    'add_extra_slot',
    'make_available',
}
MAX_VACATION_DAYS = 366
WAITLIST_PRIORITIES = {'low', 'normal', 'high', 'urgent'}


class AvailabilityActionRequest(BaseModel):
    action: str
    date: str | None = None
    time: str | None = None
    startDate: str | None = None
    endDate: str | None = None
    reason: str = ''

    @field_validator('action')
    @classmethod
    def validate_action(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in AVAILABILITY_ACTIONS:
            raise ValueError('Unknown action.')
        return normalized

    @field_validator('date', 'startDate', 'endDate')
    @classmethod
    def validate_dates(cls, value: str | None) -> str | None:
        return validate_date_string(value) if value else None

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str | None) -> str | None:
        return validate_time_string(value) if value else None


class CreateWaitlistRequest(BaseModel):
    patientName: str
    patientEmail: str
    patientPhone: str = ''
    preferredDates: list[str] = Field(default_factory=list)
    preferredTimes: list[str] = Field(default_factory=list)
    sessionType: str = 'Single Session'
    priority: str = 'normal'
    notes: str = ''

    @field_validator('patientName', 'patientEmail')
    @classmethod
    def require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Patient name and email required.')
        return normalized

    @field_validator('priority')
    @classmethod
    def validate_priority(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in WAITLIST_PRIORITIES:
            raise ValueError('Invalid priority.')
        return normalized


class UpdateWaitlistRequest(BaseModel):
    waitlistId: str
    status: str
    notes: str | None = None

    @field_validator('waitlistId', 'status')
    @classmethod
    def require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Waitlist ID and status required.')
        return normalized


def day_slot_times(slot_date: str, overrides: list[AvailabilityOverride]) -> list[str]:
    """Every time that could be offered on a date: the template plus extra slots."""
    extra = [override.time for override in overrides if override.date == slot_date and override.available]
    return sorted(set(config.TEMPLATE_SLOT_TIMES) | set(extra))


def _override(slot_date: str, slot_time: str, available: bool, reason: str) -> AvailabilityOverride:
    return AvailabilityOverride(
        date=slot_date,
        time=slot_time,
        available=available,
        reason=reason,
        day_of_week=parse_date_param(slot_date, 'date').strftime('%A'),
    )


def build_overrides(data: AvailabilityActionRequest, existing: list[AvailabilityOverride]) -> list[AvailabilityOverride]:
    if data.action in {'block_slot', 'add_extra_slot', 'make_available'}:
        if not data.date or not data.time:
            raise bad_request('date and time are required for this action.')
        available = data.action != 'block_slot'
        reason = data.reason or ('Blocked' if not available else 'Extra slot')
        return [_override(data.date, data.time, available, reason)]

    if data.action == 'block_day':
        if not data.date:
            raise bad_request('date is required to block a day.')
        return [
            _override(data.date, slot_time, False, data.reason or 'Day blocked')
            for slot_time in day_slot_times(data.date, existing)
        ]

    if not data.startDate or not data.endDate:
        raise bad_request('startDate and endDate are required to block a vacation.')
    start = parse_date_param(data.startDate, 'startDate')
    end = parse_date_param(data.endDate, 'endDate')
    if end < start:
        raise bad_request('endDate must not be before startDate.')
    if end - start > timedelta(days=MAX_VACATION_DAYS):
        raise bad_request(f'A vacation can span at most {MAX_VACATION_DAYS} days.')

    overrides = []
    for current in iterate_dates(start, end):
        slot_date = current.isoformat()
        overrides.extend(
            _override(slot_date, slot_time, False, data.reason or 'Vacation')
            for slot_time in day_slot_times(slot_date, existing)
        )
    return overrides


@router.get('/availability')
def list_availability_overrides(
    startDate: str | None = Query(default=None),
    endDate: str | None = Query(default=None),
    admin_email: str = Depends(get_current_admin),
):
    first = parse_date_param(startDate, 'startDate').isoformat() if startDate else None
    last = parse_date_param(endDate, 'endDate').isoformat() if endDate else None
    ensure_ledgers_ready()

    try:
        overrides = availability_ledger.list_overrides()
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    selected = [
        override.to_row()
        for override in overrides
        if (first is None or override.date >= first) and (last is None or override.date <= last)
    ]
    return {
        'template': {
            'weekdays': config.WORKING_WEEKDAYS,
            'times': config.TEMPLATE_SLOT_TIMES,
            'timezone': config.PRACTICE_TIMEZONE,
            'horizonWeeks': config.AVAILABILITY_HORIZON_WEEKS,
        },
        'overrides': selected,
    }


@router.post('/availability')
def update_availability(data: AvailabilityActionRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()

    try:
        if data.action == 'unblock_slot':
            if not data.date or not data.time:
                raise bad_request('date and time are required to unblock a slot.')
            removed = availability_ledger.remove_overrides(data.date, data.time)
            return {'success': True, 'message': f'Removed {removed} override(s).', 'removed': removed}

        with storage.ledger_lock:
            overrides = build_overrides(data, availability_ledger.list_overrides())
            availability_ledger.add_overrides(overrides)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info('Admin %s applied %s with %s override row(s)', admin_email, data.action, len(overrides))
    return {
        'success': True,
        'message': f'Action {data.action} completed successfully',
        'overrides': [override.to_row() for override in overrides],
    }


@router.delete('/availability')
def delete_availability_overrides(
    date: str = Query(...),
    time: str | None = Query(default=None),
    admin_email: str = Depends(get_current_admin),
):
    slot_date = parse_date_param(date, 'date').isoformat()
    try:
        slot_time = validate_time_string(time) if time else None
    except ValueError as exc:
        raise bad_request('time must be HH:MM.') from exc

    ensure_ledgers_ready()
    try:
        removed = availability_ledger.remove_overrides(slot_date, slot_time)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {'success': True, 'removed': removed}


@router.get('/waitlist')
def list_waitlist(admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()
    try:
        entries = waitlist_ledger.list_entries()
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc
    return {'success': True, 'waitlist': [entry.to_response() for entry in entries]}


@router.post('/waitlist', status_code=status.HTTP_201_CREATED)
def add_to_waitlist(data: CreateWaitlistRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()
    entry = WaitlistEntry(
        waitlist_id=str(uuid.uuid4()),
        patient_name=data.patientName,
        patient_email=data.patientEmail,
        patient_phone=data.patientPhone,
        preferred_dates=data.preferredDates,
        preferred_times=data.preferredTimes,
        session_type=data.sessionType,
        priority=data.priority,
        notes=data.notes,
    )

    try:
        waitlist_ledger.add_entry(entry)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    return {'success': True, 'waitlistId': entry.waitlist_id, 'message': 'Added to waitlist successfully'}


@router.put('/waitlist')
def update_waitlist_entry(data: UpdateWaitlistRequest, admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()
    try:
        entry = waitlist_ledger.update_entry(data.waitlistId, data.status, data.notes)
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Waitlist entry not found.')
    return {'success': True, 'entry': entry.to_response(), 'message': 'Waitlist entry updated successfully'}


@router.delete('/waitlist')
def remove_waitlist_entry(waitlistId: str = Query(...), admin_email: str = Depends(get_current_admin)):
    ensure_ledgers_ready()
    try:
        deleted = waitlist_ledger.delete_entry(waitlistId.strip())
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Waitlist entry not found.')
    return {'success': True, 'message': 'Waitlist entry removed successfully'}
