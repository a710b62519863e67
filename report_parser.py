"""
report_parser.py — Seller Performance Report Parser
=====================================================
Turns third-party seller-performance exports into a ``ReportModel``:
  • CSV reports        — one document, sections separated by title rows
  • Excel workbooks    — one section per tab, tab purpose taken from its name

Design principles
-----------------
  1. NEVER lose a whole report because one part is malformed; a bad number
     becomes NOT_AVAILABLE, a bad section or tab is skipped.
  2. NEVER trust the layout: section titles may be missing, mixed-case or
     quoted, and numeric cells may carry "$", "," or "%".
  3. Only structurally unusable input (wrong type, empty workbook bytes,
     unopenable workbook, no tabs) raises ``ParseError``.
  4. No I/O, no environment reads: callers pass in already-fetched content.

Usage
-----
    from report_parser import parse_csv, parse_workbook, parse_report

    report = parse_csv(open("report.csv").read())
    report = parse_workbook(open("report.xlsx", "rb").read())

    # Dispatch on declared MIME type / filename / content signature:
    report = parse_report(data, content_type="text/csv", filename="Sept.csv")
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from openpyxl import load_workbook

from report_model import (
    NOT_AVAILABLE,
    AmazonPerformance,
    Metric,
    Payouts,
    ProductRow,
    ProfitLoss,
    ReportModel,
    is_available,
)

logger = logging.getLogger(__name__)

# Flattened-text extraction is preferred when its characters-per-structured-row
# ratio exceeds this value. Kept at 8 for compatibility with existing reports.
TEXT_DENSITY_THRESHOLD = 8


class ParseError(ValueError):
    """Input is not a parseable report document."""


# ══════════════════════════════════════════════════════════════════════════════
# Primitive helpers
# ══════════════════════════════════════════════════════════════════════════════

def _clean(v: Any) -> str:
    """Return stripped string; '' when None/NaN."""
    if v is None:
        return ""
    if isinstance(v, float) and (v != v):          # NaN fast-path
        return ""
    return str(v).strip()


def _is_blank(v: Any) -> bool:
    return _clean(v) == ""


def _norm(v: Any) -> str:
    """Lower-case, collapse inner whitespace, drop a trailing ':'."""
    s = re.sub(r"\s+", " ", _clean(v).lower())
    return s.rstrip(":").strip()


def _non_blank_vals(row: List[str]) -> List[str]:
    return [_clean(v) for v in row if not _is_blank(v)]


# ══════════════════════════════════════════════════════════════════════════════
# Value coercion
# ══════════════════════════════════════════════════════════════════════════════

_NA_TOKENS = {"n/a", "na"}
_DECIMAL_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)$")


def coerce(raw: Union[str, int, float, None]) -> Metric:
    """Convert a raw cell → float, or NOT_AVAILABLE.

    Strips "$", "," and "%" (a percent is kept at its displayed magnitude,
    "54.0%" → 54.0). Blank cells, "N/A"/"na" in any case and anything that
    is not a plain signed decimal after stripping come back NOT_AVAILABLE.
    Never raises.
    """
    if raw is None or isinstance(raw, bool):
        return NOT_AVAILABLE
    if isinstance(raw, (int, float, np.number)):
        f = float(raw)
        if f != f or f in (float("inf"), float("-inf")):
            return NOT_AVAILABLE
        return f

    s = _clean(raw)
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        s = s[1:-1].strip()
    if not s or s.lower() in _NA_TOKENS:
        return NOT_AVAILABLE

    s = s.replace("$", "").replace(",", "").replace("%", "").strip()
    if not _DECIMAL_RE.match(s):
        return NOT_AVAILABLE
    try:
        return float(s)
    except ValueError:
        return NOT_AVAILABLE


# ══════════════════════════════════════════════════════════════════════════════
# Tokenizer — one CSV line → cells
# ══════════════════════════════════════════════════════════════════════════════

def split_line(line: str) -> List[str]:
    """Split one line on commas, honouring double-quote quoting.

    A doubled quote inside a quoted cell is a literal quote. An unterminated
    quote runs to the end of the line instead of raising, so
    ``'Sales,"1000'`` still gives ``['Sales', '1000']``. Cells are trimmed.
    """
    cells: List[str] = []
    buf: List[str] = []
    inside_quotes = False
    i = 0
    n = len(line)

    while i < n:
        ch = line[i]
        if ch == '"':
            if inside_quotes and i + 1 < n and line[i + 1] == '"':
                buf.append('"')
                i += 2
                continue
            inside_quotes = not inside_quotes
        elif ch == "," and not inside_quotes:
            cells.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
        i += 1

    cells.append("".join(buf).strip())
    return cells


# ══════════════════════════════════════════════════════════════════════════════
# Section classifier
# ══════════════════════════════════════════════════════════════════════════════

class SectionKind(str, Enum):
    PROFIT_LOSS = "profit_loss"
    PRODUCT_PERFORMANCE = "product_performance"
    PAYOUTS = "payouts"
    AMAZON_PERFORMANCE = "amazon_performance"
    UNKNOWN = "unknown"


@dataclass
class Section:
    kind: SectionKind
    rows: List[List[str]] = field(default_factory=list)
    title: str = ""
    inferred: bool = False          # True when recovered from an ASIN header, not a title


# Each rule is a list of alternatives; an alternative matches when every one
# of its patterns is found. Rules are tried in order, first match wins.
_SECTION_TITLE_RULES: List[Tuple[SectionKind, List[Tuple[re.Pattern, ...]]]] = [
    (SectionKind.PROFIT_LOSS, [
        (re.compile(r"profit"), re.compile(r"loss")),
        (re.compile(r"p\s*&\s*l\b"),),
        (re.compile(r"financial summary"),),
    ]),
    (SectionKind.PRODUCT_PERFORMANCE, [
        (re.compile(r"product"), re.compile(r"performance")),
        (re.compile(r"\basin\b"),),
        (re.compile(r"product data"),),
    ]),
    (SectionKind.PAYOUTS, [
        (re.compile(r"payout"),),
        (re.compile(r"earnings"),),
    ]),
    (SectionKind.AMAZON_PERFORMANCE, [
        (re.compile(r"amazon"), re.compile(r"performance")),
        (re.compile(r"platform performance"),),
        (re.compile(r"marketplace performance"),),
    ]),
]

_ASIN_HEADER_RE = re.compile(r"\basin\b")


def match_section_title(text: Any) -> Optional[SectionKind]:
    """Return the section a title (or tab name) refers to, else None."""
    t = _norm(text)
    if not t:
        return None
    for kind, alternatives in _SECTION_TITLE_RULES:
        for patterns in alternatives:
            if all(p.search(t) for p in patterns):
                return kind
    return None


def _is_asin_header(cell: Any) -> bool:
    return bool(_ASIN_HEADER_RE.search(_norm(cell)))


def _title_row_kind(
    row: List[str], current_kind: Optional[SectionKind] = None
) -> Optional[Tuple[SectionKind, str]]:
    """Return (kind, title) when the row opens a section.

    Either the row's only non-empty cell names a section, or its first cell
    does ("Profit & Loss,September 2024"). A multi-cell row does not count
    when another cell holds a number ("Latest Payout,500" is data), when it
    is a column header, or when it names the section that is already open.
    """
    nb = _non_blank_vals(row)
    if len(nb) == 1:
        kind = match_section_title(nb[0])
        return (kind, nb[0]) if kind else None
    if not nb:
        return None

    first = _clean(row[0])
    kind = match_section_title(first)
    if kind is None or kind is current_kind or _is_asin_header(first):
        return None
    if any(is_available(coerce(v)) for v in row[1:]):
        return None
    return kind, first


def classify_rows(rows: List[List[str]]) -> List[Section]:
    """Split rows into sections by title row, or by ASIN header inference.

    A section runs from its title row to the next title row. Rows seen
    before the first title are returned as an UNKNOWN section. When no title
    row exists at all, the first row with an ASIN header cell starts an
    inferred PRODUCT_PERFORMANCE section running to the end of input.
    """
    rows = [r for r in rows if _non_blank_vals(r)]
    sections: List[Section] = []
    leading: List[List[str]] = []
    current: Optional[Section] = None

    for idx, row in enumerate(rows):
        title = _title_row_kind(row, current.kind if current is not None else None)
        if title:
            kind, text = title
            if current is not None:
                logger.info("Found section: %s with %d rows", current.title, len(current.rows))
            current = Section(kind=kind, title=text)
            sections.append(current)
            logger.info("Starting new section: %s (%s)", text, kind.value)
            continue

        for cell in row:
            if len(row) > 1 and match_section_title(cell):
                logger.debug("Found section keyword in cell: %r at row %d (not a title row)",
                             cell, idx + 1)
        if current is None:
            leading.append(row)
        else:
            current.rows.append(row)

    if current is not None:
        logger.info("Found section: %s with %d rows", current.title, len(current.rows))

    if not sections:
        logger.info("No sections detected, trying to infer structure from headers")
        for idx, row in enumerate(rows):
            if any(_is_asin_header(c) for c in row):
                logger.info("Inferred product performance section from headers at row %d", idx + 1)
                inferred = Section(
                    kind=SectionKind.PRODUCT_PERFORMANCE,
                    rows=rows[idx:],
                    title="Per-Product Performance",
                    inferred=True,
                )
                return ([Section(SectionKind.UNKNOWN, rows[:idx])] if idx else []) + [inferred]

    if leading:
        sections.insert(0, Section(SectionKind.UNKNOWN, leading))
    return sections


# ══════════════════════════════════════════════════════════════════════════════
# Report builder
# ══════════════════════════════════════════════════════════════════════════════

class _ReportBuilder:
    """Mutable staging area; ``build()`` freezes it into a ReportModel."""

    def __init__(self):
        self.profit_loss: Dict[str, Metric] = {}
        self.payouts: Dict[str, Metric] = {}
        self.amazon: Dict[str, Any] = {}
        self.products: List[ProductRow] = []

    def merge(self, other: "_ReportBuilder") -> None:
        self.profit_loss.update(other.profit_loss)
        self.payouts.update(other.payouts)
        self.amazon.update(other.amazon)
        self.products.extend(other.products)

    def build(self) -> ReportModel:
        return ReportModel(
            profit_loss=ProfitLoss(**self.profit_loss),
            product_performance=tuple(self.products),
            payouts=Payouts(**self.payouts),
            amazon_performance=AmazonPerformance(**self.amazon),
        )


# ══════════════════════════════════════════════════════════════════════════════
# Section field mappers
# ══════════════════════════════════════════════════════════════════════════════

_PL_LABELS: Dict[str, List[str]] = {
    "sales":         ["sales", "total sales", "gross sales", "revenue", "total revenue", "income"],
    "cost_of_goods": ["cost of goods", "cogs", "cost of goods sold", "cost of sales"],
    "taxes":         ["taxes", "tax", "income tax"],
    "fba_fees":      ["fba fees", "fba", "fulfillment fees", "fulfillment by amazon fees"],
    "referral_fees": ["referral fees", "referral", "amazon referral fees"],
    "storage_fees":  ["storage fees", "storage", "warehouse fees"],
    "ad_expenses":   ["ad expenses", "advertising", "ad spend", "advertising expenses",
                      "marketing", "ads"],
    "refunds":       ["refunds", "refund", "returns"],
    "expenses":      ["expenses", "expense", "total expenses", "operating expenses"],
    "net_profit":    ["net profit", "profit", "net income", "profit after tax"],
    "margin":        ["margin", "profit margin", "net margin"],
    "roi":           ["roi", "return on investment", "return on investment %"],
}
_PL_LOOKUP: Dict[str, str] = {alias: f for f, aliases in _PL_LABELS.items() for alias in aliases}

_PAYOUT_LABELS: Dict[str, List[str]] = {
    "latest":   ["latest", "current", "this month"],
    "previous": ["previous", "last", "last month"],
    "average":  ["average", "avg", "mean"],
}
_PAYOUT_LOOKUP: Dict[str, str] = {alias: f for f, aliases in _PAYOUT_LABELS.items() for alias in aliases}
# "Latest Payout" / "Average (last 3 months)" → "latest" / "average"
_PAYOUT_NOISE_RE = re.compile(r"\([^)]*\)|\bpayouts?\b")

_AMAZON_METRICS: Dict[str, List[str]] = {
    "sales":       ["sales", "revenue"],
    "net_profit":  ["net profit", "profit"],
    "margin":      ["margin"],
    "units":       ["units", "unit", "quantity"],
    "refund_rate": ["refund rate"],
    "acos":        ["acos"],
    "tacos":       ["tacos"],
    "ctr":         ["ctr"],
}

# Most specific first: change columns before this-month columns, TACoS
# before ACoS, so "TACOS Change" is never claimed by a looser alias.
_PRODUCT_COL_ALIASES: Dict[str, List[str]] = {
    "asin":                   ["asin", "sku", "product id"],
    "sales_change":           ["sales change"],
    "net_profit_change":      ["net profit change", "profit change"],
    "margin_change":          ["margin change"],
    "units_change":           ["units change", "unit change"],
    "refund_rate_change":     ["refund rate change", "refund change"],
    "ad_spend_change":        ["ad spend change"],
    "tacos_change":           ["tacos change"],
    "acos_change":            ["acos change"],
    "ctr_change":             ["ctr change"],
    "cvr_change":             ["cvr change"],
    "sales_this_month":       ["sales this month", "sales", "revenue"],
    "net_profit_this_month":  ["net profit this month", "net profit", "profit"],
    "margin_this_month":      ["margin"],
    "units_this_month":       ["units", "unit", "quantity"],
    "refund_rate_this_month": ["refund rate", "refund"],
    "ad_spend_this_month":    ["ad spend", "advertising"],
    "tacos_this_month":       ["tacos"],
    "acos_this_month":        ["acos"],
    "ctr_this_month":         ["ctr"],
    "cvr_this_month":         ["cvr"],
    "title":                  ["title", "product name", "name", "product"],
}

# Header cells claimed only on an exact match; "Product" alone is the ASIN
# column, "Product Name" is still the title.
_PRODUCT_EXACT_ALIASES: Dict[str, List[str]] = {
    "asin": ["product"],
}
_PRODUCT_HEADER_SCAN = 5

# "$1,234.56" left unquoted splits into "$1" and "234.56"
_THOUSANDS_HEAD_RE = re.compile(r"^[-+]?\$?[-+]?\d{1,3}(?:,\d{3})*$")
_THOUSANDS_TAIL_RE = re.compile(r"^\d{3}(?:\.\d*)?%?$")


def _join_split_number(cells: List[str]) -> Tuple[str, List[str]]:
    """Re-join a value that unquoted thousands separators split apart."""
    if not cells:
        return "", []
    value = _clean(cells[0])
    j = 1
    while j < len(cells) and _THOUSANDS_HEAD_RE.match(value) and _THOUSANDS_TAIL_RE.match(_clean(cells[j])):
        value = f"{value},{_clean(cells[j])}"
        j += 1
    return value, list(cells[j:])


def _label_value_rows(rows: List[List[str]]) -> Iterator[Tuple[str, str, List[str]]]:
    """Yield (normalised label, value, remaining cells) for label/value rows."""
    for row in rows:
        if len(row) < 2:
            continue
        label = _norm(row[0])
        if not label:
            continue
        value, rest = _join_split_number(row[1:])
        yield label, value, rest


def _map_profit_loss(rows: List[List[str]], builder: _ReportBuilder) -> None:
    for label, value, _ in _label_value_rows(rows):
        target = _PL_LOOKUP.get(label)
        if target:
            builder.profit_loss[target] = coerce(value)
        else:
            logger.debug("Unrecognized profit/loss metric: %r", label)


def _map_payouts(rows: List[List[str]], builder: _ReportBuilder) -> None:
    for label, value, _ in _label_value_rows(rows):
        key = _norm(_PAYOUT_NOISE_RE.sub(" ", label))
        target = _PAYOUT_LOOKUP.get(key)
        if target:
            builder.payouts[target] = coerce(value)
        else:
            logger.debug("Unrecognized payout metric: %r", label)


def _amazon_target(label: str) -> Optional[Tuple[str, bool]]:
    """Map an Amazon Performance label → (metric, is_change)."""
    base, is_change = label, False
    if base.endswith(" change"):
        base, is_change = base[: -len(" change")], True
    if base.endswith(" this month"):
        base = base[: -len(" this month")]
    for metric, names in _AMAZON_METRICS.items():
        if base in names:
            return metric, is_change
    return None


def _map_amazon_performance(rows: List[List[str]], builder: _ReportBuilder) -> None:
    for label, value, rest in _label_value_rows(rows):
        target = _amazon_target(label)
        if target is None:
            logger.debug("Unrecognized Amazon performance metric: %r", label)
            continue
        metric, is_change = target
        if is_change:
            builder.amazon[f"{metric}_change"] = value
            continue
        builder.amazon[f"{metric}_this_month"] = coerce(value)
        change = _clean(rest[0]) if rest else ""
        if change:
            builder.amazon[f"{metric}_change"] = change


def _map_generic_columns(
    header_row: List[str],
    aliases: Dict[str, List[str]],
    exact: Optional[Dict[str, List[str]]] = None,
) -> Dict[str, int]:
    """
    First-claim-per-column mapping: once column i is owned by a field, no
    other field can take it. Exact header matches are claimed first, then
    substring matches; fields are processed in dict order in both passes.
    """
    exact = exact or {}
    headers = [_norm(v) for v in header_row]
    claimed: Dict[int, str] = {}
    mapping: Dict[str, int] = {}

    for fld, kws in aliases.items():
        names = set(kws) | set(exact.get(fld, []))
        for i, vl in enumerate(headers):
            if vl and i not in claimed and vl in names:
                mapping[fld] = i
                claimed[i] = fld
                break

    for fld, kws in aliases.items():
        if fld in mapping:
            continue
        for i, vl in enumerate(headers):
            if not vl or i in claimed:
                continue
            if any(kw in vl for kw in kws):
                mapping[fld] = i
                claimed[i] = fld
                break
    return mapping


def _find_product_header(rows: List[List[str]]) -> int:
    """Index of the header row: the first with an ASIN/SKU cell, else 0."""
    for i, row in enumerate(rows[:_PRODUCT_HEADER_SCAN]):
        for v in row:
            nv = _norm(v)
            if _is_asin_header(nv) or nv in ("sku", "product", "product id"):
                return i
    return 0


def _map_product_performance(rows: List[List[str]], builder: _ReportBuilder) -> None:
    if not rows:
        return
    hdr_idx = _find_product_header(rows)
    header = rows[hdr_idx]
    col_map = _map_generic_columns(header, _PRODUCT_COL_ALIASES, _PRODUCT_EXACT_ALIASES)
    col_map.setdefault("asin", 0)
    logger.debug("Product header %r → columns %r", header, col_map)

    added = 0
    for row in rows[hdr_idx + 1:]:
        asin_idx = col_map["asin"]
        asin = _clean(row[asin_idx]) if asin_idx < len(row) else ""
        if not asin or _norm(asin) == _norm(header[asin_idx] if asin_idx < len(header) else ""):
            continue

        values: Dict[str, Any] = {}
        for fld, idx in col_map.items():
            raw = row[idx] if idx < len(row) else ""
            if fld.endswith("_this_month"):
                values[fld] = coerce(raw)
            else:
                values[fld] = _clean(raw)
        builder.products.append(ProductRow(**values))
        added += 1

    logger.info("Total products parsed: %d", added)


_SECTION_MAPPERS: Dict[SectionKind, Callable[[List[List[str]], _ReportBuilder], None]] = {
    SectionKind.PROFIT_LOSS:         _map_profit_loss,
    SectionKind.PRODUCT_PERFORMANCE: _map_product_performance,
    SectionKind.PAYOUTS:             _map_payouts,
    SectionKind.AMAZON_PERFORMANCE:  _map_amazon_performance,
}


def _apply_sections(sections: List[Section], builder: _ReportBuilder) -> None:
    """Map each section into its own staging builder; a failure skips that section only."""
    for sec in sections:
        mapper = _SECTION_MAPPERS.get(sec.kind)
        if mapper is None:
            logger.debug("Ignoring %d rows outside any known section", len(sec.rows))
            continue
        staged = _ReportBuilder()
        try:
            mapper(sec.rows, staged)
        except Exception:
            logger.exception("Failed to map section '%s'; skipping", sec.title or sec.kind.value)
            continue
        builder.merge(staged)


# ══════════════════════════════════════════════════════════════════════════════
# CSV report parser
# ══════════════════════════════════════════════════════════════════════════════

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


def _as_text(content: Any) -> str:
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    if isinstance(content, (bytes, bytearray, memoryview)):
        try:
            return bytes(content).decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParseError(f"CSV content is not valid UTF-8 text: {e}") from e
    raise ParseError(f"Invalid CSV content: expected str or bytes, got {type(content).__name__}")


def parse_csv(content: Union[str, bytes]) -> ReportModel:
    """Parse a whole CSV report into a ReportModel.

    Raises ParseError only when ``content`` is not text (or UTF-8 bytes).
    Anything else that is malformed degrades to NOT_AVAILABLE fields.
    """
    text = _as_text(content)
    lines = [ln.strip() for ln in _LINE_SPLIT_RE.split(text)]
    lines = [ln for ln in lines if ln]
    logger.info("Parsing %d lines of CSV content", len(lines))

    rows = [split_line(ln) for ln in lines]
    sections = classify_rows(rows)
    logger.info("Found sections: %s", [s.title or s.kind.value for s in sections])

    builder = _ReportBuilder()
    _apply_sections(sections, builder)
    return builder.build()


# ══════════════════════════════════════════════════════════════════════════════
# Workbook tab extractor
# ══════════════════════════════════════════════════════════════════════════════

_EMPTY_CELL_STRINGS = {"", "undefined", "null", "none", "nan"}


def _fmt_number(v: float) -> str:
    v = round(float(v), 10)
    if v.is_integer():
        return str(int(v))
    return f"{v:.15g}"


def _cell_text(value: Any, number_format: Optional[str] = None) -> str:
    """Render a cell the way the sheet displays it (dates ISO, % scaled)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, (int, float, np.number)):
        if value != value:
            return ""
        if number_format and "%" in number_format:
            return f"{_fmt_number(value * 100)}%"
        return _fmt_number(value)
    return str(value).strip()


def _read_grid(ws) -> List[List[str]]:
    """Strategy A: rows × columns from the worksheet cells, empty cells as ''."""
    return [
        [_cell_text(c.value, getattr(c, "number_format", None)) for c in row]
        for row in ws.iter_rows(min_row=1, max_row=ws.max_row, max_col=ws.max_column)
    ]


def _read_text(ws) -> str:
    """Strategy B: the tab as displayed, rendered to one comma-delimited blob."""
    lines = []
    for row in ws.iter_rows():
        lines.append([_cell_text(c.value, getattr(c, "number_format", None)) for c in row])
    if not lines:
        return ""
    return pd.DataFrame(lines).to_csv(index=False, header=False, lineterminator="\n")


def _split_records(text: str) -> List[str]:
    """Split CSV text into records; line breaks inside quoted cells stay in the cell."""
    records: List[str] = []
    buf: List[str] = []
    inside_quotes = False
    for ch in text:
        if ch == '"':
            inside_quotes = not inside_quotes
        elif ch in "\r\n" and not inside_quotes:
            if buf:
                records.append("".join(buf))
                buf = []
            continue
        buf.append(ch)
    if buf:
        records.append("".join(buf))
    return records


def _record_keys(header: List[str]) -> List[str]:
    keys: List[str] = []
    seen: Dict[str, int] = {}
    for v in header:
        base = _clean(v) or "__EMPTY"
        n = seen.get(base, 0)
        seen[base] = n + 1
        keys.append(base if n == 0 else f"{base}_{n}")
    return keys


def _read_records(ws, book: Optional[pd.ExcelFile] = None) -> List[Dict[str, Any]]:
    """Strategy C: header-keyed records read through pandas, blank rows skipped."""
    if book is None:
        raise ValueError("no pandas reader for this workbook")
    df = book.parse(ws.title, header=None, dtype=object)
    grid = [[_cell_text(v) for v in row] for row in df.itertuples(index=False)]
    grid = [r for r in grid if any(r)]
    if len(grid) < 2:
        return []
    keys = _record_keys(grid[0])
    return [dict(zip(keys, r)) for r in grid[1:]]


def _row_has_content(row: List[Any]) -> bool:
    return any(_clean(c).lower() not in _EMPTY_CELL_STRINGS for c in row)


def extract_tab(
    ws,
    *,
    book: Optional[pd.ExcelFile] = None,
    text_density_threshold: float = TEXT_DENSITY_THRESHOLD,
) -> List[List[str]]:
    """Extract a worksheet's rows with three independent strategies.

    Selection, in order:
      1. flattened text, when its length per structured row exceeds
         ``text_density_threshold`` and it holds both "," and a line break;
      2. header-keyed records, when there are more records than structured rows;
      3. structured rows.
    Rows that are empty (or only "undefined"/"null") are dropped. Never
    raises: total failure returns [].

    ``book`` is the workbook opened with ``pd.ExcelFile``; records are read
    through it, independently of the worksheet cells.
    """
    tab_name = getattr(ws, "title", "?")

    grid: List[List[str]] = []
    text = ""
    records: List[Dict[str, Any]] = []
    grid_ok = text_ok = records_ok = False

    try:
        grid = _read_grid(ws)
        grid_ok = True
        logger.debug("Structured rows for tab '%s': %d rows", tab_name, len(grid))
    except Exception as e:
        logger.warning("Structured-row extraction failed for tab '%s': %s", tab_name, e)

    try:
        text = _read_text(ws)
        text_ok = True
        logger.debug("Flattened text for tab '%s': %d characters", tab_name, len(text))
    except Exception as e:
        logger.warning("Flattened-text extraction failed for tab '%s': %s", tab_name, e)

    try:
        records = _read_records(ws, book)
        records_ok = True
        logger.debug("Record objects for tab '%s': %d records", tab_name, len(records))
    except Exception as e:
        logger.warning("Record extraction failed for tab '%s': %s", tab_name, e)

    if not (grid_ok or text_ok or records_ok):
        logger.error("All extraction methods failed for tab '%s'", tab_name)
        return []

    try:
        rows: List[List[Any]] = grid if grid_ok else []
        method = "structured rows"
        ratio = len(text) / max(len(rows), 1)

        if text_ok and text and ratio > text_density_threshold and "," in text and "\n" in text:
            rows = [split_line(rec) for rec in _split_records(text) if rec.strip()]
            method = f"flattened text (content ratio {ratio:.2f})"
        elif records_ok and records and len(records) > len(rows):
            keys = list(records[0].keys())
            rows = [keys] + [[_clean(rec.get(k)) for k in keys] for rec in records]
            method = f"record objects ({len(records)} records)"

        rows = [r for r in rows if _row_has_content(r)]
        logger.info("Extracted %d rows from tab '%s' using %s", len(rows), tab_name, method)
        return rows
    except Exception:
        logger.exception("Unexpected error extracting data from tab '%s'", tab_name)
        return []


# ══════════════════════════════════════════════════════════════════════════════
# Workbook parser — multi-tab orchestration
# ══════════════════════════════════════════════════════════════════════════════

def _has_data(ws) -> bool:
    if ws.max_row > 1 or ws.max_column > 1:
        return True
    return not _is_blank(ws.cell(row=1, column=1).value)


def classify_tab(tab_name: str, rows: List[List[str]]) -> List[Section]:
    """Decide what a tab holds, by name first, then by its content."""
    kind = match_section_title(tab_name)
    if kind:
        logger.info("Tab '%s' classified as %s by name", tab_name, kind.value)
        return [Section(kind=kind, rows=rows, title=tab_name)]

    if rows and any(_is_asin_header(c) for c in rows[0]):
        logger.info("Tab '%s' inferred as product performance from ASIN header", tab_name)
        return [Section(SectionKind.PRODUCT_PERFORMANCE, rows, title=tab_name, inferred=True)]

    sections = [s for s in classify_rows(rows) if s.kind is not SectionKind.UNKNOWN]
    if sections:
        logger.info("Tab '%s' holds %d titled sections", tab_name, len(sections))
    else:
        logger.info("Could not classify tab '%s'; skipping", tab_name)
    return sections


def _process_tab(ws, book, text_density_threshold: float) -> Optional[_ReportBuilder]:
    if not _has_data(ws):
        logger.info("Tab '%s' has no data range, skipping", ws.title)
        return None

    rows = extract_tab(ws, book=book, text_density_threshold=text_density_threshold)
    if not rows:
        logger.info("No data extracted from tab '%s', skipping", ws.title)
        return None

    staged = _ReportBuilder()
    _apply_sections(classify_tab(ws.title, rows), staged)
    return staged


def parse_workbook(
    data: Union[bytes, bytearray, memoryview],
    *,
    text_density_threshold: float = TEXT_DENSITY_THRESHOLD,
) -> ReportModel:
    """Parse a multi-tab spreadsheet workbook into a ReportModel.

    Raises ParseError for non-bytes or empty input, a workbook that cannot
    be opened, or one with no tabs. A tab that fails for any other reason is
    logged and skipped; the remaining tabs are still parsed.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ParseError(f"Invalid workbook input: expected bytes, got {type(data).__name__}")
    if len(data) == 0:
        raise ParseError("Invalid workbook input: content is empty")

    raw = bytes(data)
    try:
        wb = load_workbook(io.BytesIO(raw), data_only=True)
    except Exception as e:
        raise ParseError(f"Failed to read workbook: {e}") from e

    tabs = list(wb.worksheets)
    if not tabs:
        raise ParseError("No worksheets found in workbook")
    logger.info("Workbook tabs: %s", [ws.title for ws in tabs])

    # Second, independent reader for the record strategy
    try:
        book = pd.ExcelFile(io.BytesIO(raw), engine="openpyxl")
    except Exception as e:
        logger.warning("pandas could not open workbook, record extraction disabled: %s", e)
        book = None

    builder = _ReportBuilder()
    for ws in tabs:
        try:
            staged = _process_tab(ws, book, text_density_threshold)
        except Exception:
            logger.exception("Error processing tab '%s'; skipping", ws.title)
            continue
        if staged is not None:
            builder.merge(staged)

    report = builder.build()
    logger.info("Workbook parsed: %d products", len(report.product_performance))
    return report


# ══════════════════════════════════════════════════════════════════════════════
# Format dispatch
# ══════════════════════════════════════════════════════════════════════════════

_WORKBOOK_MIME_HINTS = ("spreadsheetml", "ms-excel", "excel")
_WORKBOOK_EXTENSIONS = (".xlsx", ".xlsm")
_ZIP_SIGNATURE = b"PK\x03\x04"
_WORKBOOK_PART_HINTS = ("xl/", "workbook.xml", "worksheets/")


def looks_like_workbook(content: Any) -> bool:
    """True when content carries a zipped-workbook signature."""
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content[:4]) == _ZIP_SIGNATURE
    if isinstance(content, str):
        if content.startswith("PK\x03\x04"):
            return True
        return "PK\x03\x04" in content and any(h in content for h in _WORKBOOK_PART_HINTS)
    return False


def _declared_workbook(content_type: Optional[str], filename: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    if any(h in ct for h in _WORKBOOK_MIME_HINTS):
        return True
    return (filename or "").lower().endswith(_WORKBOOK_EXTENSIONS)


def parse_report(
    content: Union[str, bytes],
    content_type: Optional[str] = None,
    filename: Optional[str] = None,
    *,
    text_density_threshold: float = TEXT_DENSITY_THRESHOLD,
) -> ReportModel:
    """Route content to the workbook or CSV parser.

    Content declared as CSV that actually carries workbook bytes is parsed
    as a workbook; if it will not open, that is a ParseError rather than an
    attempt to read binary data as text.
    """
    declared = _declared_workbook(content_type, filename)
    sniffed = looks_like_workbook(content)

    if declared or sniffed:
        if sniffed and not declared:
            logger.info("'%s' is labelled %s but contains workbook data; parsing as workbook",
                        filename or "content", content_type or "text")
        if isinstance(content, str):
            try:
                content = content.encode("latin-1")
            except UnicodeEncodeError as e:
                raise ParseError(f"Workbook content is not binary data: {e}") from e
        return parse_workbook(content, text_density_threshold=text_density_threshold)

    return parse_csv(content)
