"""Serialize feed rows to the catalog import CSV.

Semicolon-delimited, header row first, every non-empty field quoted, empty
values written as bare empty fields, '\\n' line endings.
"""

import csv
import io

from feedsync.services.feed_mapper import FEED_COLUMNS

FEED_CONTENT_TYPE = "text/csv; charset=utf-8"


def render_feed_csv(rows) -> str:
    buf = io.StringIO()
    # QUOTE_NOTNULL leaves None unquoted, so blanks become None first
    writer = csv.writer(buf, delimiter=";", quoting=csv.QUOTE_NOTNULL, lineterminator="\n")
    writer.writerow(FEED_COLUMNS)
    for row in rows:
        writer.writerow([_cell(row.get(column)) for column in FEED_COLUMNS])
    return buf.getvalue()


def _cell(value):
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None
