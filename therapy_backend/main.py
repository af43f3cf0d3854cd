import logging

from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from therapy_backend.auth.dependencies import get_current_admin
from therapy_backend.core import config
from therapy_backend.routes import (
    admin_booking_routes,
    admin_patient_routes,
    admin_schedule_routes,
    auth_routes,
    booking_routes,
    gdpr_routes,
    intake_routes,
    payment_routes,
)
from therapy_backend.storage import LedgerError, ensure_ledger_files

logging.basicConfig(level=config.LOG_LEVEL.upper())

app = FastAPI(title='Therapy Booking API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_storage() -> None:
    config.validate_runtime_config()
    try:
        ensure_ledger_files()
    except LedgerError:
        logger.exception('Ledger initialization failed. Check DATA_DIR permissions.')


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'detail': 'Invalid request.', 'errors': jsonable_encoder(exc.errors())},
    )


@app.get('/')
def root():
    return {'status': 'Therapy Booking API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(intake_routes.router)
app.include_router(booking_routes.router)
app.include_router(payment_routes.router, prefix='/orders')
app.include_router(gdpr_routes.router, prefix='/gdpr')

admin_dependencies = [Depends(get_current_admin)]
app.include_router(admin_booking_routes.router, prefix='/admin', dependencies=admin_dependencies)
app.include_router(admin_schedule_routes.router, prefix='/admin', dependencies=admin_dependencies)
app.include_router(admin_patient_routes.router, prefix='/admin', dependencies=admin_dependencies)
