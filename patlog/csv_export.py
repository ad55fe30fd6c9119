# patlog/csv_export.py
import logging
from datetime import date, datetime

import pandas as pd

EXPORT_COLUMNS = [
    "id", "serial", "inspection_date", "reinspection_date", "inspector",
    "description", "location", "equipment_class", "visual_pass", "fuse_rating",
    "earth_ohms", "insulation_mohms", "leakage", "passed", "comments",
    "appliance_plug_check", "equipment_power", "load_test", "rcd_trip_time",
    "manufacturer", "image_url",
]


def _cell(value):
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value

def image_url(inspection, base_url: str):
    if not inspection.image:
        return None
    return f"{base_url.rstrip('/')}/blobs/{inspection.image.key}"

def inspections_to_csv(inspections, base_url: str) -> str:
    """
    One header row plus one record per inspection, in the order given.
    Missing values are written as empty fields.
    """
    export_data = []
    for inspection in inspections:
        row = {col: _cell(getattr(inspection, col, None)) for col in EXPORT_COLUMNS if col != "image_url"}
        row["image_url"] = image_url(inspection, base_url)
        export_data.append(row)

    # object dtype keeps integers as integers when a column has blanks
    df = pd.DataFrame(export_data, columns=EXPORT_COLUMNS, dtype=object)
    logging.debug(f"CSV export built: {len(df)} rows")
    return df.to_csv(index=False)

def export_filename(today: date = None) -> str:
    return f"inspections-{(today or date.today()).isoformat()}.csv"
