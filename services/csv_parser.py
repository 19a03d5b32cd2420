"""
CSV text → list of header-keyed rows.

Exports from the checkout platforms carry quoted cells with commas and line
breaks (addresses, product names), so rows are read with a character scanner
instead of line/comma splitting.
"""
from __future__ import annotations

import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

BOM = "\ufeff"
_LINE_BREAKS = ("\r", "\n")


def decode_csv_bytes(content: bytes) -> str:
    """Decode an uploaded file. UTF-8 first (BOM tolerant), then cp1252 for Excel exports, then latin-1."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    try:
        text = content.decode("cp1252")
        logger.info("CSV is not valid UTF-8; decoded as cp1252")
        return text
    except UnicodeDecodeError:
        # latin-1 maps every byte
        logger.info("CSV is neither UTF-8 nor cp1252; decoded as latin-1")
        return content.decode("latin-1")


def _scan_records(text: str) -> List[List[str]]:
    records: List[List[str]] = []
    length = len(text)
    i = 0

    while i < length:
        record: List[str] = []

        while True:
            # leading blanks before a field
            while i < length and text[i] in (" ", "\t"):
                i += 1

            if i < length and text[i] == '"':
                i += 1
                chars: List[str] = []
                while i < length:
                    ch = text[i]
                    if ch == '"':
                        if i + 1 < length and text[i + 1] == '"':
                            chars.append('"')
                            i += 2
                            continue
                        i += 1
                        break
                    chars.append(ch)
                    i += 1
                # anything between the closing quote and the delimiter is dropped
                while i < length and text[i] not in (",",) + _LINE_BREAKS:
                    i += 1
                value = "".join(chars)
            else:
                start = i
                while i < length and text[i] not in (",",) + _LINE_BREAKS:
                    i += 1
                value = text[start:i]

            record.append(value.strip())

            if i < length and text[i] == ",":
                i += 1
                continue
            break

        # consume the record terminator (CRLF, CR, LF and any blank lines after it)
        while i < length and text[i] in _LINE_BREAKS:
            i += 1

        if len(record) == 1 and record[0] == "":
            continue
        records.append(record)

    return records


def parse_headers(text: str) -> List[str]:
    if text.startswith(BOM):
        text = text[1:]
    records = _scan_records(text)
    return records[0] if records else []


def parse_csv(text: str) -> List[Dict[str, str]]:
    """
    Parse CSV text into rows keyed by the header line.

    Missing trailing cells become "", extra cells beyond the header are ignored,
    blank lines are skipped and an empty input yields [].
    """
    if not text:
        return []
    if text.startswith(BOM):
        text = text[1:]

    records = _scan_records(text)
    if not records:
        return []

    headers = records[0]
    rows: List[Dict[str, str]] = []
    for record in records[1:]:
        row = {header: (record[idx] if idx < len(record) else "") for idx, header in enumerate(headers)}
        rows.append(row)

    logger.debug("Parsed CSV: %d headers, %d rows", len(headers), len(rows))
    return rows
