"""CSV export of a sampled dataset."""

import io
import re

import pandas as pd

_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|\r\n]+')


def dataset_to_frame(data: list) -> pd.DataFrame:
    """Tabulate *data* using the first point's keys as the column order.

    Keys that only appear in later points are dropped; keys missing from a
    point become empty cells.
    """
    if not data:
        return pd.DataFrame()
    columns = list(data[0].keys())
    return pd.DataFrame(data).reindex(columns=columns)


def dataset_to_csv(data: list) -> str:
    """Serialize *data* as comma-delimited text with a header row."""
    if not data:
        return ""
    frame = dataset_to_frame(data)
    return frame.to_csv(index=False, lineterminator="\n")


def csv_to_rows(text: str) -> tuple:
    """Parse text written by ``dataset_to_csv`` back into (header, rows)."""
    if not text.strip():
        return [], []
    frame = pd.read_csv(io.StringIO(text))
    return list(frame.columns), frame.astype(float).values.tolist()


def export_filename(title: str | None) -> str:
    """``<title>_dataset.csv`` with path-hostile characters replaced."""
    base = _UNSAFE_FILENAME.sub("_", title or "").strip() or "simulation"
    return f"{base}_dataset.csv"
