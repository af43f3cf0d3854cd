"""Async Google Workspace client for the practice calendar and Gmail.

Authenticates with the practice's stored OAuth refresh token; the access token
is cached in-process until shortly before it expires.
"""

import base64
import json
import logging
import time
import uuid
from datetime import datetime
from email.message import EmailMessage
from html import escape
from urllib.parse import quote

import httpx

from therapy_backend.core import config
from therapy_backend.models.fields import parse_datetime

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'
GOOGLE_CALENDAR_API = 'https://www.googleapis.com/calendar/v3'
GMAIL_API = 'https://gmail.googleapis.com/gmail/v1'

TOKEN_REFRESH_MARGIN_SECONDS = 300
REMINDER_OVERRIDES = [
    {'method': 'email', 'minutes': 24 * 60},
    {'method': 'email', 'minutes': 60},
    {'method': 'popup', 'minutes': 15},
]

_TOKEN_CACHE: dict[str, float | str | None] = {'token': None, 'exp': 0.0}


class WorkspaceError(Exception):
    """Base error for failed Google Workspace calls; ``details`` holds the provider message."""

    def __init__(self, details: str, status_code: int | None = None):
        super().__init__(details)
        self.details = details
        self.status_code = status_code


class CalendarError(WorkspaceError):
    pass


class MailError(WorkspaceError):
    pass


def reset_token_cache() -> None:
    _TOKEN_CACHE.update(token=None, exp=0.0)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f'HTTP {response.status_code}'

    error = payload.get('error') if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get('message') or json.dumps(error)
    if isinstance(error, str):
        return payload.get('error_description') or error
    return response.text


async def _get_access_token(error_class: type[WorkspaceError] = CalendarError) -> str:
    now = time.time()
    if _TOKEN_CACHE['token'] and now < _TOKEN_CACHE['exp']:
        return _TOKEN_CACHE['token']  # type: ignore[return-value]

    if not (config.GOOGLE_CLIENT_ID and config.GOOGLE_CLIENT_SECRET and config.GOOGLE_REFRESH_TOKEN):
        raise error_class('Google Workspace credentials are not configured.')

    try:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    'client_id': config.GOOGLE_CLIENT_ID,
                    'client_secret': config.GOOGLE_CLIENT_SECRET,
                    'refresh_token': config.GOOGLE_REFRESH_TOKEN,
                    'grant_type': 'refresh_token',
                },
            )
    except httpx.HTTPError as exc:
        raise error_class(f'Google token refresh failed: {exc}') from exc

    if response.status_code != 200:
        raise error_class(_error_message(response), response.status_code)

    data = response.json()
    token = data.get('access_token')
    if not token:
        raise error_class('Google token response did not include an access token.')

    _TOKEN_CACHE.update(token=token, exp=now + data.get('expires_in', 3600) - TOKEN_REFRESH_MARGIN_SECONDS)
    logger.info('Refreshed Google Workspace access token')
    return token


async def _request(
    method: str,
    url: str,
    error_class: type[WorkspaceError] = CalendarError,
    **kwargs,
) -> dict:
    headers = {
        'Authorization': f'Bearer {await _get_access_token(error_class)}',
        'Accept': 'application/json',
    }
    try:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS) as client:
            response = await client.request(method, url, headers=headers, **kwargs)
    except httpx.HTTPError as exc:
        raise error_class(f'{method} {url} failed: {exc}') from exc

    if response.status_code >= 400:
        raise error_class(_error_message(response), response.status_code)

    if not response.content:
        return {}
    return response.json()


def _calendar_url(path: str = '') -> str:
    calendar_id = quote(config.GOOGLE_CALENDAR_ID, safe='')
    return f'{GOOGLE_CALENDAR_API}/calendars/{calendar_id}{path}'


async def freebusy(time_min: datetime, time_max: datetime) -> list[tuple[datetime, datetime]]:
    payload = await _request(
        'POST',
        f'{GOOGLE_CALENDAR_API}/freeBusy',
        json={
            'timeMin': time_min.isoformat(),
            'timeMax': time_max.isoformat(),
            'timeZone': config.PRACTICE_TIMEZONE,
            'items': [{'id': config.GOOGLE_CALENDAR_ID}],
        },
    )

    calendar = payload.get('calendars', {}).get(config.GOOGLE_CALENDAR_ID, {})
    errors = calendar.get('errors')
    if errors:
        raise CalendarError(f"Free/busy query failed: {errors[0].get('reason', 'unknown')}")

    intervals = []
    for period in calendar.get('busy', []):
        start = parse_datetime(period.get('start'))
        end = parse_datetime(period.get('end'))
        if start and end:
            intervals.append((start, end))
    return intervals


def extract_meet_link(event: dict) -> str:
    if event.get('hangoutLink'):
        return event['hangoutLink']
    for entry_point in event.get('conferenceData', {}).get('entryPoints', []):
        if entry_point.get('entryPointType') == 'video' and entry_point.get('uri'):
            return entry_point['uri']
    return ''


async def insert_therapy_event(
    booking_token: str,
    booking_id: str,
    patient_email: str,
    patient_name: str,
    start: datetime,
    end: datetime,
    session_number: int,
    total_sessions: int,
    session_package: dict | None,
) -> dict:
    """Create a session event with a Meet link and return its ids and links."""
    package_name = (session_package or {}).get('name') or 'Therapy Session'
    attendees = [{'email': patient_email, 'responseStatus': 'needsAction'}]
    if config.DOCTOR_EMAIL:
        attendees.append({'email': config.DOCTOR_EMAIL, 'responseStatus': 'accepted'})

    event = {
        'summary': f'Therapy Session - {patient_name}',
        'description': '\n'.join(
            [
                f'Therapy Session {session_number}/{total_sessions}',
                f'Patient: {patient_name}',
                f'Email: {patient_email}',
                f'Therapy Plan: {package_name}',
                f'Booking Token: {booking_token}',
                '',
                'This is a confidential therapy session.',
            ]
        ),
        'start': {'dateTime': start.isoformat(), 'timeZone': config.PRACTICE_TIMEZONE},
        'end': {'dateTime': end.isoformat(), 'timeZone': config.PRACTICE_TIMEZONE},
        'attendees': attendees,
        'conferenceData': {
            'createRequest': {
                'requestId': f'therapy-{booking_token}-{session_number}-{uuid.uuid4().hex[:8]}',
                'conferenceSolutionKey': {'type': 'hangoutsMeet'},
            },
        },
        'reminders': {'useDefault': False, 'overrides': REMINDER_OVERRIDES},
        'extendedProperties': {
            'private': {
                'bookingToken': booking_token,
                'bookingId': booking_id,
                'therapySession': 'true',
                'patientEmail': patient_email,
                'patientName': patient_name,
                'sessionNumber': str(session_number),
                'totalSessions': str(total_sessions),
                'sessionPackage': json.dumps(session_package or {}),
            },
        },
    }

    created = await _request(
        'POST',
        _calendar_url('/events'),
        json=event,
        params={'conferenceDataVersion': 1, 'sendUpdates': 'all'},
    )
    logger.info('Created calendar event %s for booking %s', created.get('id'), booking_id)
    return {
        'eventId': created.get('id', ''),
        'meetLink': extract_meet_link(created),
        'htmlLink': created.get('htmlLink', ''),
    }


async def get_event(event_id: str) -> dict:
    return await _request('GET', _calendar_url(f'/events/{event_id}'))


async def set_meet_link(event_id: str, meet_link: str) -> dict:
    """Replace the conference entry points of an event with a fixed Meet link."""
    event = await get_event(event_id)
    event['conferenceData'] = {
        'entryPoints': [{'entryPointType': 'video', 'uri': meet_link, 'label': 'Google Meet'}],
        'conferenceSolution': {'key': {'type': 'hangoutsMeet'}, 'name': 'Google Meet'},
    }
    event.pop('hangoutLink', None)

    updated = await _request(
        'PUT',
        _calendar_url(f'/events/{event_id}'),
        json=event,
        params={'conferenceDataVersion': 1},
    )
    logger.info('Set Meet link of calendar event %s', event_id)
    return updated


async def patch_event(event_id: str, start: datetime, end: datetime) -> dict:
    updated = await _request(
        'PATCH',
        _calendar_url(f'/events/{event_id}'),
        json={
            'start': {'dateTime': start.isoformat(), 'timeZone': config.PRACTICE_TIMEZONE},
            'end': {'dateTime': end.isoformat(), 'timeZone': config.PRACTICE_TIMEZONE},
        },
        params={'sendUpdates': 'all'},
    )
    logger.info('Moved calendar event %s to %s', event_id, start.isoformat())
    return updated


async def delete_event(event_id: str) -> None:
    await _request('DELETE', _calendar_url(f'/events/{event_id}'), params={'sendUpdates': 'all'})
    logger.info('Deleted calendar event %s', event_id)


def session_from_event(event: dict) -> dict:
    private = event.get('extendedProperties', {}).get('private', {})
    try:
        session_package = json.loads(private.get('sessionPackage') or 'null')
    except json.JSONDecodeError:
        session_package = None

    return {
        'eventId': event.get('id'),
        'summary': event.get('summary', ''),
        'start': event.get('start', {}).get('dateTime'),
        'end': event.get('end', {}).get('dateTime'),
        'patientEmail': private.get('patientEmail'),
        'patientName': private.get('patientName'),
        'sessionNumber': int(private.get('sessionNumber') or 1),
        'totalSessions': int(private.get('totalSessions') or 1),
        'bookingToken': private.get('bookingToken'),
        'meetLink': extract_meet_link(event) or None,
        'htmlLink': event.get('htmlLink'),
        'sessionPackage': session_package,
        'isFromCache': False,
    }


async def list_therapy_sessions(time_min: datetime, time_max: datetime) -> list[dict]:
    """List therapy session events in a window, following result pages."""
    sessions = []
    params = {
        'timeMin': time_min.isoformat(),
        'timeMax': time_max.isoformat(),
        'singleEvents': 'true',
        'orderBy': 'startTime',
        'privateExtendedProperty': 'therapySession=true',
        'maxResults': 250,
    }

    while True:
        payload = await _request('GET', _calendar_url('/events'), params=params)
        sessions.extend(session_from_event(event) for event in payload.get('items', []))
        page_token = payload.get('nextPageToken')
        if not page_token:
            return sessions
        params = {**params, 'pageToken': page_token}


def build_raw_message(to: str, subject: str, html: str) -> str:
    message = EmailMessage()
    sender = config.DOCTOR_EMAIL or 'me'
    message['From'] = sender
    message['To'] = to
    message['Subject'] = subject
    message.set_content(html, subtype='html')
    return base64.urlsafe_b64encode(message.as_bytes()).decode().rstrip('=')


async def send_mail(to: str, subject: str, html: str) -> str | None:
    if not config.SEND_EMAILS:
        logger.info('Email sending disabled; skipped %r to %s', subject, to)
        return None

    result = await _request(
        'POST',
        f'{GMAIL_API}/users/me/messages/send',
        error_class=MailError,
        json={'raw': build_raw_message(to, subject, html)},
    )
    logger.info('Sent %r to %s', subject, to)
    return result.get('id')


def booking_link(booking_token: str) -> str:
    return f"{config.BOOKING_BASE_URL.rstrip('/')}/{booking_token}"


async def send_booking_link(patient_email: str, patient_name: str, booking_token: str, sessions_total: int) -> str | None:
    link = booking_link(booking_token)
    html = (
        f'<p>Dear {patient_name},</p>'
        f'<p>Thank you for completing your intake form. Your plan includes {sessions_total} session(s).</p>'
        f'<p>Use your personal link to book your sessions: <a href="{link}">{link}</a></p>'
        '<p>The link stays valid for three months.</p>'
    )
    return await send_mail(patient_email, 'Your therapy booking link', html)


async def send_booking_confirmation(
    patient_email: str,
    patient_name: str,
    start: datetime,
    meet_link: str,
    session_number: int,
    total_sessions: int,
) -> str | None:
    when = start.strftime('%A, %d %B %Y at %H:%M')
    meet = f'<p>Join online: <a href="{meet_link}">{meet_link}</a></p>' if meet_link else ''
    html = (
        f'<p>Dear {patient_name},</p>'
        f'<p>Your session {session_number} of {total_sessions} is confirmed for {when} ({config.PRACTICE_TIMEZONE}).</p>'
        f'{meet}'
    )
    return await send_mail(patient_email, 'Therapy session confirmed', html)


async def send_admin_notification(subject: str, lines: list[str]) -> str | None:
    if not config.DOCTOR_EMAIL:
        logger.warning('DOCTOR_EMAIL is not set; admin notification %r not sent', subject)
        return None
    html = ''.join(f'<p>{line}</p>' for line in lines)
    return await send_mail(config.DOCTOR_EMAIL, subject, html)


async def send_cancellation(patient_email: str, patient_name: str, slot_date: str, slot_time: str) -> str | None:
    html = (
        f'<p>Dear {patient_name},</p>'
        f'<p>Your session on {slot_date} at {slot_time} has been cancelled. '
        'The session has been returned to your plan.</p>'
    )
    return await send_mail(patient_email, 'Therapy session cancelled', html)


async def send_practice_message(patient_email: str, subject: str, message: str) -> str | None:
    body = '<br>'.join(escape(line) for line in message.splitlines())
    return await send_mail(patient_email, subject, f'<div>{body}</div>')
