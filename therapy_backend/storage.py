import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from threading import RLock
from typing import Any

from therapy_backend.core import config
from therapy_backend.ledgers.csv_codec import decode_table, encode_table
from therapy_backend.models.availability import AvailabilityOverride
from therapy_backend.models.booking import Booking
from therapy_backend.models.booking_token import BookingToken
from therapy_backend.models.waitlist import WaitlistEntry

logger = logging.getLogger(__name__)

BOOKINGS_FILE = 'bookings.csv'
BOOKING_TOKENS_FILE = 'booking-tokens.csv'
AVAILABILITY_FILE = 'availability.csv'
WAITLIST_FILE = 'waitlist.csv'
GDPR_LOG_FILE = 'gdpr-deletion-log.csv'
PATIENTS_FILE = os.path.join('data', 'patients.json')
PENDING_BOOKINGS_FILE = os.path.join('cache', 'pending-bookings.json')

GDPR_LOG_COLUMNS = ['timestamp', 'requestId', 'email', 'action', 'status', 'reason']

LEDGER_COLUMNS = {
    BOOKINGS_FILE: Booking.COLUMNS,
    BOOKING_TOKENS_FILE: BookingToken.COLUMNS,
    AVAILABILITY_FILE: AvailabilityOverride.COLUMNS,
    WAITLIST_FILE: WaitlistEntry.COLUMNS,
    GDPR_LOG_FILE: GDPR_LOG_COLUMNS,
}

# Every read-modify-write of a ledger file runs while holding this lock.
ledger_lock = RLock()
_checked_data_dirs: set[str] = set()


class LedgerError(Exception):
    """Raised when a ledger file cannot be read or written."""


def ledger_path(filename: str) -> Path:
    return Path(config.DATA_DIR) / filename


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except OSError:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def _upgrade_ledger(path: Path, columns: list[str]) -> None:
    content = path.read_text(encoding='utf-8')
    header, rows = decode_table(content)

    if not header:
        _atomic_write(path, encode_table(columns, []))
        return

    missing_columns = [column for column in columns if column not in header]
    if not missing_columns:
        return

    shutil.copyfile(path, path.with_name(path.name + '.backup'))
    _atomic_write(path, encode_table(columns, rows))
    logger.info('Extended %s with columns %s', path.name, ', '.join(missing_columns))


def ensure_ledger_files() -> None:
    data_dir = str(Path(config.DATA_DIR).resolve())

    if data_dir in _checked_data_dirs:
        return

    with ledger_lock:
        if data_dir in _checked_data_dirs:
            return

        try:
            for filename, columns in LEDGER_COLUMNS.items():
                path = ledger_path(filename)
                if not path.exists():
                    _atomic_write(path, encode_table(columns, []))
                    continue
                _upgrade_ledger(path, columns)

            ledger_path(PATIENTS_FILE).parent.mkdir(parents=True, exist_ok=True)
            ledger_path(PENDING_BOOKINGS_FILE).parent.mkdir(parents=True, exist_ok=True)
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerError(f'Could not prepare ledger files in {data_dir}: {exc}') from exc

        _checked_data_dirs.add(data_dir)


def read_rows(filename: str) -> list[dict[str, str]]:
    ensure_ledger_files()
    path = ledger_path(filename)
    with ledger_lock:
        try:
            content = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerError(f'Could not read {filename}: {exc}') from exc

    _, rows = decode_table(content)
    return rows


def write_rows(filename: str, rows: list[dict[str, str]]) -> None:
    ensure_ledger_files()
    with ledger_lock:
        try:
            _atomic_write(ledger_path(filename), encode_table(LEDGER_COLUMNS[filename], rows))
        except OSError as exc:
            raise LedgerError(f'Could not write {filename}: {exc}') from exc


def append_row(filename: str, row: dict[str, str]) -> None:
    with ledger_lock:
        rows = read_rows(filename)
        rows.append(row)
        write_rows(filename, rows)


def load_json(filename: str, default: Any) -> Any:
    path = ledger_path(filename)
    with ledger_lock:
        try:
            content = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return default
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerError(f'Could not read {filename}: {exc}') from exc

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        logger.warning('Ignoring unreadable JSON file %s', filename)
        return default


def save_json(filename: str, data: Any) -> None:
    with ledger_lock:
        try:
            _atomic_write(ledger_path(filename), json.dumps(data, indent=2, ensure_ascii=False))
        except OSError as exc:
            raise LedgerError(f'Could not write {filename}: {exc}') from exc
