"""Append-only audit log for data-protection requests."""

import logging
import uuid

from therapy_backend import storage
from therapy_backend.models.fields import format_datetime, utcnow

logger = logging.getLogger(__name__)

STATUS_COMPLETED = 'COMPLETED'
STATUS_PARTIAL = 'PARTIAL'
STATUS_REJECTED = 'REJECTED'
STATUS_NO_DATA_FOUND = 'NO_DATA_FOUND'
STATUS_ERROR = 'ERROR'


def log_action(email: str, action: str, status: str, reason: str = '') -> str:
    request_id = str(uuid.uuid4())
    storage.append_row(
        storage.GDPR_LOG_FILE,
        {
            'timestamp': format_datetime(utcnow()),
            'requestId': request_id,
            'email': email,
            'action': action,
            'status': status,
            'reason': reason,
        },
    )
    logger.info('GDPR %s for request %s: %s', action, request_id, status)
    return request_id
