"""CSV export of collections and report tables."""

import csv
import io
import json
from datetime import date

from flask import Response

UTF8_BOM = '\ufeff'


def _cell(value):
    if value is None:
        return ''
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(',', ':'))
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def rows_to_csv(rows):
    """
    Serialize a list of dicts to CSV text.

    The header is the union of all keys in first-seen order, written as a
    plain comma-separated line. Every data cell is wrapped in double quotes
    with embedded quotes doubled; nested values are written as inline JSON.
    Empty input gives ''.
    """
    if not rows:
        return ''

    headers = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(key)

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    buffer.write(','.join(headers) + '\n')
    for row in rows:
        writer.writerow([_cell(row.get(key)) for key in headers])
    return buffer.getvalue().rstrip('\n')


def export_filename(prefix, today=None):
    today = today or date.today()
    return f'{prefix}-export-{today.isoformat()}.csv'


def csv_response(rows, prefix):
    """Download response with a UTF-8 BOM so spreadsheet tools detect the encoding."""
    body = UTF8_BOM + rows_to_csv(rows)
    return Response(
        body.encode('utf-8'),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{export_filename(prefix)}"'},
    )
