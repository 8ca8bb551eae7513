#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
build_checkin_sheet.py

Builds printable check-in sheets from messy reservation rosters.

Input:
- Iterate all .xlsx / .xlsm / .csv files in a folder (default: ./rosters_input)
- First sheet only for workbooks; CSVs are decoded as UTF-8, falling back to CP932 (Shift_JIS)
- Optional readings file (JSON object or 2-column CSV: name -> reading) applied to unsorted names

Output (per input file, in --out-folder):
- <stem>__checkin.csv (utf-8-sig) or <stem>__checkin.xlsx
  columns: No, 区分, 名前, 読み, 人数, 参照, チェック

Output (per run):
- _checkin_report.csv

Logs:
- Console + <--log-dir>/checkin_roster.log (default: logs/)

Dependencies:
- pandas
- openpyxl
"""

from __future__ import annotations

import argparse
import csv
import io
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd
from pandas.api.types import is_scalar

from roster_index import (
    Record,
    apply_readings,
    bucket,
    find_duplicates,
    ingest,
    roster_stats,
)

SHEET_COLUMNS = ["No", "区分", "名前", "読み", "人数", "参照", "チェック"]
SHEET_NAME = "名簿"

INPUT_EXTS = (".xlsx", ".xlsm", ".csv")
CSV_ENCODINGS = ("utf-8-sig", "cp932")


# -------------
# Data classes
# -------------

@dataclass
class FileReport:
    file: str
    rows_read: int
    header_skipped: bool
    name_column: Optional[int]
    groups: int
    attendees: int
    unsorted: int
    references: int
    duplicate_groups: int
    output: str
    warnings: str
    errors: str


# ----------
# Logging
# ----------

LOGGER_NAME = "checkin_roster"
LOG_FILE_NAME = "checkin_roster.log"


def setup_logging(debug: bool, log_dir: str = "logs") -> logging.Logger:
    """
    Console + <log_dir>/checkin_roster.log. The engine logs to the same
    named logger, so its debug lines land in the run log too.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    level = logging.DEBUG if debug else logging.INFO

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    os.makedirs(log_dir, exist_ok=True)
    log_path = Path(log_dir) / LOG_FILE_NAME

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: List[logging.Handler] = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler(sys.stdout),
    ]
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(fmt)
        logger.addHandler(h)

    logger.debug(f"Logging to {log_path.resolve()}")
    return logger


# --------------
# Roster reading
# --------------

def _plain_cell(v: Any) -> Any:
    """
    One raw cell -> None (blank / NaN / NaT), a python scalar, or text.
    """
    if v is None or (is_scalar(v) and pd.isna(v)):
        return None
    # numpy scalars -> python scalars
    if hasattr(v, "item") and not isinstance(v, (str, bytes)):
        try:
            return v.item()
        except (ValueError, AttributeError):
            return v
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _clean_row(values: Iterable[Any]) -> List[Any]:
    row = [_plain_cell(v) for v in values]
    while row and row[-1] is None:
        row.pop()
    return row


def frame_to_rows(raw: pd.DataFrame) -> List[List[Any]]:
    """
    DataFrame (header=None) -> list of rows. Blank rows are dropped and
    trailing blank cells trimmed, so row length reflects the filled cells.
    """
    rows: List[List[Any]] = []
    for values in raw.itertuples(index=False, name=None):
        row = _clean_row(values)
        if row:
            rows.append(row)
    return rows


def decode_csv_bytes(data: bytes) -> Tuple[str, str]:
    """
    UTF-8 first (BOM tolerated), then CP932; last resort is lossy UTF-8.
    """
    for enc in CSV_ENCODINGS:
        try:
            return data.decode(enc), enc
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace"), "utf-8 (lossy)"


def read_csv_rows(file_path: Path, logger: logging.Logger) -> Tuple[List[List[Any]], List[str]]:
    warnings: List[str] = []
    text, enc = decode_csv_bytes(file_path.read_bytes())
    if enc != CSV_ENCODINGS[0]:
        warnings.append(f"Decoded as {enc}.")
        logger.debug(f"{file_path.name}: decoded as {enc}")

    # csv.reader tolerates ragged rows
    rows: List[List[Any]] = []
    for values in csv.reader(io.StringIO(text)):
        row = _clean_row(values)
        if row:
            rows.append(row)
    return rows, warnings


def read_workbook_rows(file_path: Path, logger: logging.Logger) -> Tuple[List[List[Any]], List[str]]:
    warnings: List[str] = []
    with pd.ExcelFile(file_path, engine="openpyxl") as xls:
        if not xls.sheet_names:
            warnings.append("Workbook has no sheets.")
            return [], warnings

        sheet = xls.sheet_names[0]
        if len(xls.sheet_names) > 1:
            warnings.append(f"Using first sheet '{sheet}' of {len(xls.sheet_names)}.")
        logger.debug(f"{file_path.name}: reading sheet '{sheet}'")

        raw = pd.read_excel(xls, sheet_name=sheet, header=None)
    return frame_to_rows(raw), warnings


def read_roster_rows(file_path: Path, logger: logging.Logger) -> Tuple[List[List[Any]], List[str]]:
    """
    Returns (rows, warnings). Raises ValueError for unsupported extensions.
    """
    suffix = file_path.suffix.lower()
    if suffix == ".csv":
        return read_csv_rows(file_path, logger)
    if suffix in (".xlsx", ".xlsm"):
        return read_workbook_rows(file_path, logger)
    raise ValueError(f"Unsupported extension: {suffix}")


def load_readings(path: Path) -> Dict[str, str]:
    """
    Readings file: a JSON object {name: reading}, or a CSV whose first two
    columns are name and reading (a header row is fine, it simply never matches).
    """
    if path.suffix.lower() == ".json":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Readings JSON must be an object: {path}")
        return {str(k).strip(): str(v).strip() for k, v in data.items() if v is not None}

    # same decoding chain as rosters; extra columns (notes) are ignored
    text, _ = decode_csv_bytes(path.read_bytes())
    out: Dict[str, str] = {}
    for values in csv.reader(io.StringIO(text)):
        if len(values) < 2:
            continue
        name = values[0].strip()
        reading = values[1].strip()
        if name and reading:
            out[name] = reading
    return out


# --------------
# Sheet writing
# --------------

def records_to_frame(records: List[Record]) -> pd.DataFrame:
    rows = []
    for i, r in enumerate(records, start=1):
        rows.append({
            "No": i,
            "区分": bucket(r.reading),
            "名前": r.display_name,
            "読み": "" if r.reading == r.display_name else r.reading,
            "人数": r.count,
            "参照": "参照" if r.is_reference else "",
            "チェック": "",
        })
    return pd.DataFrame(rows, columns=SHEET_COLUMNS)


def write_checkin_sheet(records: List[Record], out_path: Path) -> Path:
    df = records_to_frame(records)
    if out_path.suffix.lower() == ".xlsx":
        with pd.ExcelWriter(out_path, engine="openpyxl") as writer:
            df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
    else:
        df.to_csv(out_path, index=False, encoding="utf-8-sig")
    return out_path


# -------------------
# File-level pipeline
# -------------------

def process_file(
    file_path: Path,
    out_folder: Path,
    out_format: str,
    readings: Optional[Dict[str, str]],
    logger: logging.Logger,
) -> Tuple[List[Record], FileReport]:
    warnings: List[str] = []
    errors: List[str] = []
    records: List[Record] = []
    rows: List[List[Any]] = []
    header_skipped = False
    name_col: Optional[int] = None
    output = ""

    try:
        rows, read_warnings = read_roster_rows(file_path, logger)
        warnings.extend(read_warnings)

        ingested = ingest(rows)
        records = ingested.records
        header_skipped = ingested.header_skipped
        name_col = ingested.name_column
        logger.info(f"{file_path.name}: rows={len(rows)} header_skipped={header_skipped} name_column={name_col}")

        if readings:
            records = apply_readings(records, readings)

        if not records:
            warnings.append("No attendee rows found.")

        safe_stem = re.sub(r"[^\w.-]+", "_", file_path.stem).strip("_") or "roster"
        out_path = out_folder / f"{safe_stem}__checkin.{out_format}"
        write_checkin_sheet(records, out_path)
        output = str(out_path)
        logger.info(f"{file_path.name}: wrote check-in sheet {out_path.resolve()} rows={len(records)}")

    except Exception as e:
        logger.exception(f"{file_path.name}: processing failed")
        errors.append(str(e))

    stats = roster_stats(records)
    dups = find_duplicates(records)
    if dups:
        names = ", ".join(g.name for g in dups[:5])
        warnings.append(f"{len(dups)} duplicate name group(s): {names}")
    if stats.unsorted:
        warnings.append(f"{stats.unsorted} record(s) without reading (listed under Other).")

    rep = FileReport(
        file=file_path.name,
        rows_read=len(rows),
        header_skipped=header_skipped,
        name_column=name_col,
        groups=stats.groups,
        attendees=stats.attendees,
        unsorted=stats.unsorted,
        references=stats.references,
        duplicate_groups=len(dups),
        output=output,
        warnings=" | ".join(warnings),
        errors=" | ".join(errors),
    )
    return records, rep


# -----
# Main
# -----

def find_input_files(folder: Path) -> List[Path]:
    files: List[Path] = []
    for p in sorted(folder.glob("*")):
        if p.is_file() and p.suffix.lower() in INPUT_EXTS and not p.name.startswith("~$"):
            files.append(p)
    return files


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Build phonetically sorted check-in sheets from reservation rosters.")
    parser.add_argument("--folder", default="rosters_input", help="Input folder containing .xlsx/.xlsm/.csv rosters (default: rosters_input)")
    parser.add_argument("--out-folder", default="out_checkin", help="Output folder for per-roster check-in sheets")
    parser.add_argument("--out-report", default="_checkin_report.csv", help="Output run report CSV")
    parser.add_argument("--readings", default=None, help="Optional JSON/CSV file mapping names to readings")
    parser.add_argument("--format", dest="out_format", choices=("csv", "xlsx"), default="csv", help="Check-in sheet format")
    parser.add_argument("--log-dir", default="logs", help="Folder for checkin_roster.log (default: logs)")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    args = parser.parse_args(argv)

    logger = setup_logging(args.debug, args.log_dir)

    folder = Path(args.folder)
    if not folder.exists():
        logger.error(f"Input folder not found: {folder.resolve()}")
        sys.exit(2)

    out_folder = Path(args.out_folder)
    out_folder.mkdir(parents=True, exist_ok=True)

    readings: Optional[Dict[str, str]] = None
    if args.readings:
        try:
            readings = load_readings(Path(args.readings))
            logger.info(f"Loaded {len(readings)} reading(s) from {args.readings}")
        except Exception:
            logger.exception(f"Could not load readings from {args.readings}; continuing without readings")
            readings = None

    report_columns = list(FileReport.__dataclass_fields__.keys())

    files = find_input_files(folder)
    if not files:
        logger.warning(f"No input files found in {folder.resolve()} (expected .xlsx/.xlsm/.csv)")
        pd.DataFrame(columns=report_columns).to_csv(args.out_report, index=False, encoding="utf-8-sig")
        return

    logger.info(f"Found {len(files)} file(s) in {folder.resolve()}")

    report_rows: List[Dict[str, Any]] = []
    for fp in files:
        logger.info(f"Processing file: {fp.name}")
        _, rep = process_file(fp, out_folder, args.out_format, readings, logger)
        report_rows.append(asdict(rep))

    rep_df = pd.DataFrame(report_rows, columns=report_columns)
    rep_df.to_csv(args.out_report, index=False, encoding="utf-8-sig")
    logger.info(f"Wrote run report: {Path(args.out_report).resolve()} rows={len(rep_df)}")


if __name__ == "__main__":
    main()
