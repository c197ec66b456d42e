from __future__ import annotations

"""CSV/TSV loader rendering rows as labelled lines."""

import csv
import io

from src.loaders.base import LoadedPage, LoaderError
from src.loaders.text import decode_text


class CSVLoaderError(LoaderError):
    """Raised when CSV loading fails."""
    pass


def load_csv_bytes(data: bytes) -> list[LoadedPage]:
    """Load CSV/TSV bytes as ``header: value`` lines, one block per row."""
    text = decode_text(data).strip()
    if not text:
        return []
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    try:
        rows = list(csv.reader(io.StringIO(text), dialect))
    except csv.Error as exc:
        raise CSVLoaderError(f"Malformed CSV: {exc}") from exc
    rows = [row for row in rows if any(cell.strip() for cell in row)]
    if not rows:
        return []
    header = [cell.strip() or f"column_{idx}" for idx, cell in enumerate(rows[0], start=1)]
    blocks: list[str] = ["CSV Data:"]
    for row in rows[1:]:
        pairs = [
            f"{header[idx] if idx < len(header) else f'column_{idx + 1}'}: {value.strip()}"
            for idx, value in enumerate(row)
            if value.strip()
        ]
        if pairs:
            blocks.append(". ".join(pairs) + ".")
    if len(blocks) == 1:
        blocks.append(", ".join(header))
    return [LoadedPage(text="\n".join(blocks), page=1, paged=False)]
