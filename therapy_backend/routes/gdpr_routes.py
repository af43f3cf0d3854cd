import logging

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from therapy_backend import storage
from therapy_backend.ledgers import gdpr_log
from therapy_backend.routes.common import bad_request, ensure_ledgers_ready, ledger_unavailable
from therapy_backend.services import gdpr

logger = logging.getLogger(__name__)

router = APIRouter(tags=['gdpr'])


class DeletionRequest(BaseModel):
    email: str
    requestType: str = gdpr.ACTION_DELETION


@router.post('/deletion')
def request_deletion(data: DeletionRequest):
    ensure_ledgers_ready()

    try:
        result = gdpr.request_deletion(data.email, action=data.requestType)
    except gdpr.InvalidEmailError as exc:
        raise bad_request('Invalid email address.') from exc
    except storage.LedgerError as exc:
        raise ledger_unavailable(exc) from exc

    if not result.found_data:
        message = 'No data found for this email address.'
    elif result.medical_data_status == gdpr.MEDICAL_STATUS_DELETED:
        message = 'All of your data has been deleted.'
    else:
        message = 'Your data is still within the statutory retention period.'

    return {'success': True, 'message': message, 'requestId': result.request_id, 'details': result.to_response()}


@router.get('/deletion')
def export_data(email: str = Query(default='')):
    if not email.strip():
        raise bad_request('Email address is required.')

    ensure_ledgers_ready()

    try:
        export = gdpr.export_data(email)
    except gdpr.InvalidEmailError as exc:
        raise bad_request('Invalid email address.') from exc
    except storage.LedgerError as exc:
        try:
            gdpr_log.log_action(email, gdpr.ACTION_EXPORT, gdpr_log.STATUS_ERROR, str(exc))
        except storage.LedgerError:
            logger.exception('Could not record failed export for %s', email)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail='Data export unavailable.') from exc

    message = 'Your data has been exported.' if export.personal_data else 'No data found for this email address.'
    return {'success': True, 'data': export.to_response(), 'message': message}
