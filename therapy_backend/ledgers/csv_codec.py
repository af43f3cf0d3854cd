"""Single place where ledger rows are encoded to and decoded from CSV.

Fields containing a comma, a double quote or a line break are wrapped in
double quotes with internal quotes doubled. Structured values (session
packages, preferred dates) are stored as JSON text inside one field.
"""

import csv
import io
import json
from typing import Any, Iterable


def encode_table(columns: list[str], rows: Iterable[dict[str, str]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer,
        fieldnames=columns,
        quoting=csv.QUOTE_MINIMAL,
        lineterminator='\n',
        extrasaction='ignore',
    )
    writer.writeheader()
    for row in rows:
        writer.writerow({column: '' if row.get(column) is None else str(row.get(column)) for column in columns})
    return buffer.getvalue()


def decode_table(content: str) -> tuple[list[str], list[dict[str, str]]]:
    """Return the header and the data rows of a ledger file.

    Blank lines are skipped. Short rows are padded with empty strings so every
    row carries every header column.
    """
    reader = csv.reader(io.StringIO(content))
    header: list[str] = []
    rows: list[dict[str, str]] = []

    for values in reader:
        if not header:
            header = [value.strip() for value in values]
            continue
        if not values or all(not value.strip() for value in values):
            continue
        padded = values + [''] * (len(header) - len(values))
        rows.append(dict(zip(header, padded)))

    return header, rows


def encode_json_field(value: Any) -> str:
    if value is None:
        return ''
    return json.dumps(value, ensure_ascii=False, separators=(',', ':'))


def decode_json_field(value: str, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default
