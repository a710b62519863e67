"""
report_model.py — Canonical seller-performance report model
=============================================================
The strongly-typed structure handed to the dashboard after a CSV or
workbook report has been parsed.

Every numeric leaf is either a ``float`` or the ``NOT_AVAILABLE`` sentinel.
Missing data is never stored as ``0``; a real zero and an absent metric
stay distinguishable up to the display layer.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Tuple, Union


# ══════════════════════════════════════════════════════════════════════════════
# NotAvailable sentinel
# ══════════════════════════════════════════════════════════════════════════════

class NotAvailable:
    """Marker for a metric that was blank, "N/A" or unparseable."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "N/A"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (NotAvailable, ())

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


NOT_AVAILABLE = NotAvailable()

Metric = Union[float, NotAvailable]


def is_available(value: Any) -> bool:
    return value is not NOT_AVAILABLE and value is not None


# ══════════════════════════════════════════════════════════════════════════════
# Report sections
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProfitLoss:
    sales: Metric = NOT_AVAILABLE
    cost_of_goods: Metric = NOT_AVAILABLE
    taxes: Metric = NOT_AVAILABLE
    fba_fees: Metric = NOT_AVAILABLE
    referral_fees: Metric = NOT_AVAILABLE
    storage_fees: Metric = NOT_AVAILABLE
    ad_expenses: Metric = NOT_AVAILABLE
    refunds: Metric = NOT_AVAILABLE
    expenses: Metric = NOT_AVAILABLE
    net_profit: Metric = NOT_AVAILABLE
    margin: Metric = NOT_AVAILABLE
    roi: Metric = NOT_AVAILABLE


@dataclass(frozen=True)
class ProductRow:
    """One ASIN line of the per-product performance table.

    ``*_change`` fields are free-form deltas ("+10.5%", "-3") and are kept
    verbatim; only the ``*_this_month`` fields are coerced.
    """

    asin: str = ""
    title: str = ""
    sales_this_month: Metric = NOT_AVAILABLE
    sales_change: str = ""
    net_profit_this_month: Metric = NOT_AVAILABLE
    net_profit_change: str = ""
    margin_this_month: Metric = NOT_AVAILABLE
    margin_change: str = ""
    units_this_month: Metric = NOT_AVAILABLE
    units_change: str = ""
    refund_rate_this_month: Metric = NOT_AVAILABLE
    refund_rate_change: str = ""
    ad_spend_this_month: Metric = NOT_AVAILABLE
    ad_spend_change: str = ""
    acos_this_month: Metric = NOT_AVAILABLE
    acos_change: str = ""
    tacos_this_month: Metric = NOT_AVAILABLE
    tacos_change: str = ""
    ctr_this_month: Metric = NOT_AVAILABLE
    ctr_change: str = ""
    cvr_this_month: Metric = NOT_AVAILABLE
    cvr_change: str = ""


@dataclass(frozen=True)
class Payouts:
    latest: Metric = NOT_AVAILABLE
    previous: Metric = NOT_AVAILABLE
    average: Metric = NOT_AVAILABLE


@dataclass(frozen=True)
class AmazonPerformance:
    sales_this_month: Metric = NOT_AVAILABLE
    sales_change: str = ""
    net_profit_this_month: Metric = NOT_AVAILABLE
    net_profit_change: str = ""
    margin_this_month: Metric = NOT_AVAILABLE
    margin_change: str = ""
    units_this_month: Metric = NOT_AVAILABLE
    units_change: str = ""
    refund_rate_this_month: Metric = NOT_AVAILABLE
    refund_rate_change: str = ""
    acos_this_month: Metric = NOT_AVAILABLE
    acos_change: str = ""
    tacos_this_month: Metric = NOT_AVAILABLE
    tacos_change: str = ""
    ctr_this_month: Metric = NOT_AVAILABLE
    ctr_change: str = ""


@dataclass(frozen=True)
class ReportModel:
    profit_loss: ProfitLoss = field(default_factory=ProfitLoss)
    product_performance: Tuple[ProductRow, ...] = ()
    payouts: Payouts = field(default_factory=Payouts)
    amazon_performance: AmazonPerformance = field(default_factory=AmazonPerformance)

    def numeric_leaves(self):
        """Yield every (path, value) pair typed as a Metric."""
        for sec_name in ("profit_loss", "payouts", "amazon_performance"):
            sec = getattr(self, sec_name)
            for f in fields(sec):
                v = getattr(sec, f.name)
                if not isinstance(v, str):
                    yield f"{sec_name}.{f.name}", v
        for i, row in enumerate(self.product_performance):
            for f in fields(row):
                v = getattr(row, f.name)
                if not isinstance(v, str):
                    yield f"product_performance[{i}].{f.name}", v


def empty_report() -> ReportModel:
    """A report with every metric N/A and no product rows."""
    return ReportModel()


# ══════════════════════════════════════════════════════════════════════════════
# JSON serialisation helpers
# ══════════════════════════════════════════════════════════════════════════════

_CAMEL_RE = re.compile(r"_([a-z])")


def _camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def _serialize_value(val: Any) -> Any:
    if val is NOT_AVAILABLE or val is None:
        return "N/A"
    if isinstance(val, float) and (math.isnan(val) or math.isinf(val)):
        return "N/A"
    return val


def _serialize_section(sec: Any) -> Dict[str, Any]:
    return {_camel(f.name): _serialize_value(getattr(sec, f.name)) for f in fields(sec)}


def serialize_report(model: ReportModel) -> Dict[str, Any]:
    """Convert a ReportModel to the dashboard's JSON shape.

    Keys are camelCase (``costOfGoods``, ``salesThisMonth``) and the
    NOT_AVAILABLE sentinel is rendered as the display string ``"N/A"``.
    """
    return {
        "profitLoss":        _serialize_section(model.profit_loss),
        "productPerformance": [_serialize_section(r) for r in model.product_performance],
        "payouts":           _serialize_section(model.payouts),
        "amazonPerformance": _serialize_section(model.amazon_performance),
    }
