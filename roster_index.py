# -*- coding: utf-8 -*-
"""
roster_index.py

Deterministic normalization and edit reconciliation for check-in rosters.

Input:
- Raw rows from a spreadsheet/CSV parser (lists of str / int / float / blank cells)

Output:
- A sorted list of Record objects, grouped for printing by phonetic index
  (kana row, Latin letter, "0-9" or "Other")

Pipeline:
- detect_header_row()    -> skip a literal header row
- detect_name_column()   -> column 0 or 1 (serial-number column sampling)
- classify_row()         -> {name, reading, count} per row
- ingest()               -> Records, sorted by reading, plus what was detected
- ingest_rows()          -> just the Records
- reconcile()            -> next Records after one user edit
- find_duplicates()      -> same-name groups among active records

Every function here is pure: the caller owns the current record list and
threads it through successive calls.
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger("checkin_roster")


# -----------------------
# Constants
# -----------------------

# Header labels (literal allow-lists, compared after strip)
HEADER_FIRST_CELL_LABELS = ("名前", "Name", "参加者名", "氏名", "No", "No.", "ID")
HEADER_SECOND_CELL_LABELS = ("名前", "Name", "氏名", "氏名(漢字)")

UNKNOWN_NAME = "不明"

HONORIFICS = ("様", "殿", "先生", "さん", "君")
HONORIFIC_SUFFIX_REGEX = re.compile(r"^(.+?)\s+(?:" + "|".join(HONORIFICS) + r")$")

# Whitespace between two non-ASCII characters ("田中 花子" -> "田中花子")
CJK_INNER_SPACE_REGEX = re.compile(r"(?<=[^\x00-\x7F])\s+(?=[^\x00-\x7F])")

# Cells scanned after the name column
SCAN_WINDOW = 4

# Serial-number column sampling
NAME_COLUMN_SAMPLE_MAX = 10
SERIAL_COLUMN_MAJORITY = 0.5

# Count cells: "2", "2名", "３人" (after full-width digit folding)
COUNT_MAX_DIGITS = 4
COUNT_REGEX = re.compile(r"^([0-9]{1,%d})\s*[名人]?$" % COUNT_MAX_DIGITS)
FULLWIDTH_DIGITS = str.maketrans("０１２３４５６７８９", "0123456789")

# Reading cells: Hiragana / Katakana / whitespace only
KANA_REGEX = re.compile("^[\u3040-\u309F\u30A0-\u30FF\\s]+$")
DIGITS_ONLY_REGEX = re.compile(r"^[0-9]+$")

# Bucket labels
OTHER_BUCKET = "Other"
DIGIT_BUCKET = "0-9"
ITERATION_MARK_BUCKET = "くりかえし"

# Voiced / semi-voiced / small kana folded to the plain row character
KANA_BUCKET_MAP: Dict[str, str] = {
    "ぁ": "あ", "ぃ": "い", "ぅ": "う", "ぇ": "え", "ぉ": "お",
    "か": "か", "が": "か",
    "き": "き", "ぎ": "き",
    "く": "く", "ぐ": "く",
    "け": "け", "げ": "け",
    "こ": "こ", "ご": "こ",
    "さ": "さ", "ざ": "さ",
    "し": "し", "じ": "し",
    "す": "す", "ず": "す",
    "せ": "せ", "ぜ": "せ",
    "そ": "そ", "ぞ": "そ",
    "た": "た", "だ": "た",
    "ち": "ち", "ぢ": "ち",
    "っ": "つ", "つ": "つ", "づ": "つ",
    "て": "て", "で": "て",
    "と": "と", "ど": "と",
    "は": "は", "ば": "は", "ぱ": "は",
    "ひ": "ひ", "び": "ひ", "ぴ": "ひ",
    "ふ": "ふ", "ぶ": "ふ", "ぷ": "ふ",
    "へ": "へ", "べ": "へ", "ぺ": "へ",
    "ほ": "ほ", "ぼ": "ほ", "ぽ": "ほ",
    "ゃ": "や", "や": "や",
    "ゅ": "ゆ", "ゆ": "ゆ",
    "ょ": "よ", "よ": "よ",
    "ゎ": "わ", "わ": "わ",
    "ゐ": "い", "ゑ": "え",
    "を": "を", "ん": "ん",
    "ゔ": "う",
    "ゝ": ITERATION_MARK_BUCKET, "ゞ": ITERATION_MARK_BUCKET,
}

KATAKANA_FIRST = 0x30A1
KATAKANA_LAST = 0x30F6
KATAKANA_TO_HIRAGANA_OFFSET = 0x60
HIRAGANA_FIRST = "ぁ"
HIRAGANA_LAST = "ゖ"

# Collation classes (ascending): symbols, digits, Latin, kana, everything else
_CLASS_SYMBOL = 0
_CLASS_DIGIT = 1
_CLASS_LATIN = 2
_CLASS_KANA = 3
_CLASS_OTHER = 4

_SMALL_KANA = {
    "ぁ": "あ", "ぃ": "い", "ぅ": "う", "ぇ": "え", "ぉ": "お",
    "っ": "つ", "ゃ": "や", "ゅ": "ゆ", "ょ": "よ", "ゎ": "わ",
    "ゕ": "か", "ゖ": "け",
}

LONG_VOWEL_MARK = "ー"

# Vowel a long-vowel mark extends, by hiragana base
_VOWEL_ROWS = {
    "あ": "あかさたなはまやらわ",
    "い": "いきしちにひみりゐ",
    "う": "うくすつぬふむゆる",
    "え": "えけせてねへめれゑ",
    "お": "おこそとのほもよろを",
}
_VOWEL_OF = {base: vowel for vowel, row in _VOWEL_ROWS.items() for base in row}

_DAKUTEN = "\u3099"
_HANDAKUTEN = "\u309A"


# -------------
# Data classes
# -------------

@dataclass(frozen=True)
class Record:
    id: str
    original_name: str
    display_name: str
    reading: str
    count: int = 1
    is_reference: bool = False

    @property
    def is_unsorted(self) -> bool:
        return self.reading == self.display_name and not self.is_reference


@dataclass(frozen=True)
class RecordUpdate:
    """
    Partial edit of one record. A field left as None means "no change".
    """
    display_name: Optional[str] = None
    reading: Optional[str] = None
    count: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.display_name is not None:
            out["display_name"] = self.display_name
        if self.reading is not None:
            out["reading"] = self.reading
        if self.count is not None:
            out["count"] = max(1, int(self.count))
        return out


@dataclass(frozen=True)
class RowFields:
    original_name: str
    name: str
    reading: str
    count: int


@dataclass
class DuplicateGroup:
    name: str
    total_count: int
    records: List[Record]

    @property
    def ids(self) -> List[str]:
        return [r.id for r in self.records]


@dataclass
class IngestResult:
    records: List[Record]
    header_skipped: bool
    name_column: int


@dataclass
class RosterStats:
    groups: int
    attendees: int
    unsorted: int
    references: int


IdFactory = Callable[[str], str]


def new_record_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _unique_id(prefix: str, taken: Iterable[str], make_id: IdFactory) -> str:
    taken_set = set(taken)
    candidate = make_id(prefix)
    while candidate in taken_set:
        candidate = make_id(prefix)
    return candidate


# --------------------
# Phonetic classifier
# --------------------

def bucket(reading: Optional[str]) -> str:
    """
    Section label for a reading: a hiragana row character, an upper-case
    Latin letter, "0-9" or "Other". Voiced, semi-voiced and small kana fold
    onto their plain row ("ガ" -> "か", "ぴょ" -> "ひ").
    """
    text = (reading or "").strip()
    if not text:
        return OTHER_BUCKET

    char = text[0]
    code = ord(char)
    if KATAKANA_FIRST <= code <= KATAKANA_LAST:
        char = chr(code - KATAKANA_TO_HIRAGANA_OFFSET)

    mapped = KANA_BUCKET_MAP.get(char)
    if mapped:
        return mapped

    if HIRAGANA_FIRST <= char <= HIRAGANA_LAST:
        return char

    if ("a" <= char <= "z") or ("A" <= char <= "Z"):
        return char.upper()

    if "0" <= char <= "9":
        return DIGIT_BUCKET

    return OTHER_BUCKET


# -----------
# Comparator
# -----------

def _collation_unit(char: str) -> Optional[Tuple[Tuple[int, int], Tuple[int, int, int]]]:
    if char.isspace():
        return None

    code = ord(char)
    is_katakana = 0
    if KATAKANA_FIRST <= code <= KATAKANA_LAST:
        char = chr(code - KATAKANA_TO_HIRAGANA_OFFSET)
        is_katakana = 1

    if HIRAGANA_FIRST <= char <= HIRAGANA_LAST or char in ("ゝ", "ゞ"):
        decomposed = unicodedata.normalize("NFD", char)
        base = decomposed[0]
        voicing = 0
        if _DAKUTEN in decomposed:
            voicing = 1
        elif _HANDAKUTEN in decomposed:
            voicing = 2
        small = 1 if base in _SMALL_KANA else 0
        base = _SMALL_KANA.get(base, base)
        return (_CLASS_KANA, ord(base)), (voicing, small, is_katakana)

    if char.isdigit():
        return (_CLASS_DIGIT, ord(char)), (0, 0, 0)

    if char.isascii() and char.isalpha():
        lower = char.lower()
        return (_CLASS_LATIN, ord(lower)), (0, 0, 1 if char != lower else 0)

    category = unicodedata.category(char)
    if category[0] in ("P", "S"):
        return (_CLASS_SYMBOL, code), (0, 0, 0)

    return (_CLASS_OTHER, code), (0, 0, 0)


def reading_sort_key(reading: Optional[str]) -> Tuple[Tuple, Tuple, str]:
    """
    Japanese-aware collation key for a reading.

    Primary: script class, then the base character (katakana and hiragana
    compare equal, dakuten/handakuten and small kana are ignored).
    Secondary: voicing, small-kana and script differences.
    Tertiary: the NFKC text itself.

    A long-vowel mark counts as the vowel of the kana before it
    ("ラーメン" sorts like "らあめん"); with no such kana it is ignored.
    """
    text = unicodedata.normalize("NFKC", reading or "")
    primary: List[Tuple[int, int]] = []
    secondary: List[Tuple[int, int, int]] = []
    vowel: Optional[str] = None
    for ch in text:
        if ch == LONG_VOWEL_MARK:
            if vowel:
                primary.append((_CLASS_KANA, ord(vowel)))
                secondary.append((0, 0, 0))
            continue
        unit = _collation_unit(ch)
        if unit is None:
            continue
        primary.append(unit[0])
        secondary.append(unit[1])
        vowel = _VOWEL_OF.get(chr(unit[0][1])) if unit[0][0] == _CLASS_KANA else None
    return tuple(primary), tuple(secondary), text


def sort_records(records: Iterable[Record]) -> List[Record]:
    # stable: equal readings keep their relative order
    return sorted(records, key=lambda r: reading_sort_key(r.reading))


# ----------------
# Cell classifier
# ----------------

def cell_text(v: Any) -> str:
    """
    Trimmed text of a raw cell. Blank / NaN -> "", integral floats lose ".0".
    """
    if v is None:
        return ""
    if isinstance(v, bool):
        return str(v)
    if isinstance(v, float):
        if math.isnan(v):
            return ""
        if v.is_integer():
            return str(int(v))
    return str(v).strip()


def clean_display_name(name: str) -> str:
    """
    Strip one trailing honorific (様/殿/先生/さん/君) and drop the spacing
    inside CJK names. Honorific characters elsewhere in the name are kept.
    """
    s = (name or "").strip()
    m = HONORIFIC_SUFFIX_REGEX.match(s)
    if m and m.group(1).strip():
        s = m.group(1).strip()
    s = CJK_INNER_SPACE_REGEX.sub("", s)
    return s.strip()


def parse_count_cell(text: str) -> Optional[int]:
    """
    "3" / "2名" / "１人" -> int; anything else (long codes, notes) -> None.
    """
    t = (text or "").translate(FULLWIDTH_DIGITS).strip()
    m = COUNT_REGEX.match(t)
    if not m:
        return None
    try:
        n = int(m.group(1))
    except ValueError:
        return 1
    return n if n >= 1 else 1


def looks_like_reading(text: str) -> bool:
    return bool(text) and KANA_REGEX.match(text) is not None


def classify_row(row: Sequence[Any], name_col: int) -> RowFields:
    """
    Pick name, reading and count out of one raw row.

    The name is the cell at name_col. The next SCAN_WINDOW cells are tested
    left to right; the first count-like cell and the first kana-only cell
    win. Anything else is treated as free text and ignored.
    """
    original = cell_text(row[name_col]) if name_col < len(row) else ""
    if not original:
        original = UNKNOWN_NAME
    name = clean_display_name(original) or original

    count: Optional[int] = None
    reading = ""

    scan_start = name_col + 1
    scan_end = min(len(row), scan_start + SCAN_WINDOW)
    for i in range(scan_start, scan_end):
        t = cell_text(row[i])
        if not t:
            continue

        if count is None:
            n = parse_count_cell(t)
            if n is not None:
                count = n
                continue

        if not reading and looks_like_reading(t):
            reading = t.strip()

    return RowFields(
        original_name=original,
        name=name,
        reading=reading or name,
        count=count if count is not None else 1,
    )


# -------------------
# Row ingestion pass
# -------------------

def detect_header_row(rows: Sequence[Sequence[Any]]) -> bool:
    if not rows:
        return False
    first = rows[0]
    c0 = cell_text(first[0]) if len(first) > 0 else ""
    c1 = cell_text(first[1]) if len(first) > 1 else ""
    return c0 in HEADER_FIRST_CELL_LABELS or c1 in HEADER_SECOND_CELL_LABELS


def _is_numeric_cell(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, int):
        return True
    if isinstance(v, float):
        return not math.isnan(v)
    if isinstance(v, str):
        return DIGITS_ONLY_REGEX.match(v.strip()) is not None
    return False


def _is_name_like_cell(v: Any) -> bool:
    return isinstance(v, str) and DIGITS_ONLY_REGEX.match(v.strip()) is None


def detect_name_column(rows: Sequence[Sequence[Any]], start: int = 0) -> int:
    """
    Return 1 when column 0 looks like a serial number ([number, text, ...])
    in a strict majority of the first NAME_COLUMN_SAMPLE_MAX data rows,
    else 0. Rows with fewer than two cells are not sampled.
    """
    hits = 0
    sampled = 0
    for row in rows[start:start + NAME_COLUMN_SAMPLE_MAX]:
        if row is None or len(row) < 2:
            continue
        if _is_numeric_cell(row[0]) and _is_name_like_cell(row[1]):
            hits += 1
        sampled += 1

    if sampled and (hits / sampled) > SERIAL_COLUMN_MAJORITY:
        return 1
    return 0


def _row_is_blank(row: Sequence[Any]) -> bool:
    return all(cell_text(v) == "" for v in row)


def ingest(
    rows: Sequence[Sequence[Any]],
    make_id: IdFactory = new_record_id,
) -> IngestResult:
    """
    Turn raw rows into sorted records, keeping what was detected on the way
    (header row skipped, name column) for reporting.
    """
    rows = [list(r) for r in rows if r is not None]
    header_skipped = detect_header_row(rows)
    start = 1 if header_skipped else 0
    name_col = detect_name_column(rows, start)
    logger.debug(f"ingest: rows={len(rows)} header_skipped={header_skipped} name_col={name_col}")

    records: List[Record] = []
    taken: List[str] = []
    for index, row in enumerate(rows[start:]):
        if _row_is_blank(row):
            continue
        fields = classify_row(row, name_col)
        rid = _unique_id(f"row-{index}", taken, make_id)
        taken.append(rid)
        records.append(
            Record(
                id=rid,
                original_name=fields.original_name,
                display_name=fields.name,
                reading=fields.reading,
                count=fields.count,
                is_reference=False,
            )
        )

    return IngestResult(records=sort_records(records), header_skipped=header_skipped, name_column=name_col)


def ingest_rows(
    rows: Sequence[Sequence[Any]],
    make_id: IdFactory = new_record_id,
) -> List[Record]:
    return ingest(rows, make_id).records


# -----------------------
# Reconciliation reducer
# -----------------------

def reconcile(
    records: List[Record],
    target_id: str,
    updates: RecordUpdate,
    make_id: IdFactory = new_record_id,
) -> List[Record]:
    """
    Apply one edit and return the next, re-sorted record list.

    Precedence:
      1) nothing differs              -> the input list, untouched
      2) unsorted record, new reading -> ghost split: the original stays as a
         reference (old id, old reading), a new active copy takes the edit
      3) new reading, smaller count   -> count split: the record takes the
         edit, a remainder copy keeps the pre-edit fields and the rest of
         the count
      4) anything else                -> in-place update
    """
    target = next((r for r in records if r.id == target_id), None)
    if target is None:
        return records

    changes = {k: v for k, v in updates.changes().items() if getattr(target, k) != v}
    if not changes:
        return records

    reading_changed = "reading" in changes
    taken = [r.id for r in records]

    if reading_changed and target.is_unsorted:
        sorted_copy = replace(
            target,
            id=_unique_id(f"sorted-{target.id}", taken, make_id),
            is_reference=False,
            **changes,
        )
        reference = replace(target, is_reference=True)
        if "display_name" in changes:
            reference = replace(reference, display_name=changes["display_name"])
        logger.debug(f"reconcile: ghost split {target.id} -> {sorted_copy.id}")

        out = [r for r in records if r.id != target.id]
        out.append(reference)
        out.append(sorted_copy)
        return sort_records(out)

    new_count = changes.get("count", target.count)
    if reading_changed and not target.is_reference and new_count < target.count:
        remainder = target.count - new_count
        if remainder > 0:
            updated = replace(target, **changes)
            rest = replace(
                target,
                id=_unique_id(f"split-{target.id}", taken, make_id),
                count=remainder,
            )
            logger.debug(f"reconcile: count split {target.id} {new_count}+{remainder}")

            out = [updated if r.id == target.id else r for r in records]
            out.append(rest)
            return sort_records(out)

    out = [replace(r, **changes) if r.id == target.id else r for r in records]
    return sort_records(out)


def delete_record(records: List[Record], target_id: str) -> List[Record]:
    if not any(r.id == target_id for r in records):
        return records
    return [r for r in records if r.id != target_id]


def unsorted_records(records: Iterable[Record]) -> List[Record]:
    return [r for r in records if r.is_unsorted]


def apply_readings(
    records: List[Record],
    readings: Mapping[str, str],
    make_id: IdFactory = new_record_id,
) -> List[Record]:
    """
    Feed looked-up readings (display name -> reading) through reconcile(),
    one unsorted record at a time. Blank readings are skipped.
    """
    out = records
    for rec in unsorted_records(records):
        reading = (readings.get(rec.display_name) or "").strip()
        if not reading:
            continue
        out = reconcile(out, rec.id, RecordUpdate(reading=reading), make_id=make_id)
    return out


# ------------------
# Duplicates / stats
# ------------------

def find_duplicates(records: Iterable[Record]) -> List[DuplicateGroup]:
    by_name: Dict[str, List[Record]] = {}
    for r in records:
        if r.is_reference:
            continue
        by_name.setdefault(r.display_name, []).append(r)

    return [
        DuplicateGroup(name=name, total_count=sum(r.count for r in members), records=members)
        for name, members in by_name.items()
        if len(members) > 1
    ]


def roster_stats(records: Iterable[Record]) -> RosterStats:
    groups = attendees = unsorted = references = 0
    for r in records:
        if r.is_reference:
            references += 1
            continue
        groups += 1
        attendees += r.count
        if r.is_unsorted:
            unsorted += 1
    return RosterStats(groups=groups, attendees=attendees, unsorted=unsorted, references=references)


def group_by_bucket(records: Iterable[Record]) -> List[Tuple[str, List[Record]]]:
    """
    Printed sections: consecutive records sharing a bucket label, in list order.
    """
    sections: List[Tuple[str, List[Record]]] = []
    for r in records:
        label = bucket(r.reading)
        if sections and sections[-1][0] == label:
            sections[-1][1].append(r)
        else:
            sections.append((label, [r]))
    return sections
