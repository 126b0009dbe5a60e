from __future__ import annotations

import csv
import io
from collections.abc import Mapping, Sequence
from datetime import date
from typing import Any

from flexicrm.crm.values import display_text

CSV_BOM = "\ufeff"


def export_filename(today: date) -> str:
    return f"customers_{today.isoformat()}.csv"


def build_customers_csv(visible_fields: Sequence[Any], rows: Sequence[Mapping[str, Any]]) -> str:
    """One column per visible field in display order; select values rendered as their option label."""

    output = io.StringIO()
    output.write(CSV_BOM)
    header_writer = csv.writer(output, lineterminator="\n")
    header_writer.writerow([definition.name for definition in visible_fields])

    cell_writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for data in rows:
        cell_writer.writerow([display_text(definition, data.get(definition.id)) or "" for definition in visible_fields])
    return output.getvalue()
