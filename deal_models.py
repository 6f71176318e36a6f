#!/usr/bin/env python3
"""
Deal Forecast Data Model

Record types shared by the deal store and the forecast engine. All records are
frozen dataclasses: the engine reads them, the store replaces them.

Dates are kept as the ISO-8601 strings the CRM export supplies. Parsing (and
rejecting malformed values) is the engine's job, see deal_forecast.parse_date.

Version: 1.0.0
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Stage(str, Enum):
    """Canonical deal lifecycle stages."""
    LEAD = "LEAD"
    UNCOMMITTED = "UNCOMMITTED"
    COMMITTED = "COMMITTED"
    WON = "WON"
    LOST = "LOST"


class Confidence(str, Enum):
    """Subjective certainty tag on an open deal."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ActivityType(str, Enum):
    """Kinds of activity a rep can log against a deal."""
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    LINKEDIN = "linkedin"
    NOTE = "note"


# =============================================================================
# ERRORS
# =============================================================================

class MalformedDateError(ValueError):
    """A date field could not be parsed."""


class ZeroActualError(ValueError):
    """A historical revenue row has actual == 0 and cannot enter MAPE."""


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class Activity:
    id: str
    type: str
    notes: str
    date: str


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    contact_first_name: str = ''
    contact_last_name: str = ''
    phone: str = ''
    email: str = ''
    industry: str = ''
    avatar: Optional[str] = None


@dataclass(frozen=True)
class Deal:
    """A sales opportunity as supplied by the store."""
    id: str
    account_id: str
    owner_id: str
    owner_name: str
    amount: float
    stage: str
    confidence: str
    close_date: str
    last_activity_date: str
    next_step: str = ''
    next_step_date: str = ''
    title: str = ''
    currency: str = 'USD'
    created_at: str = ''
    updated_at: str = ''
    probability: int = 0
    notes: Optional[str] = None
    activities: Tuple[Activity, ...] = ()


DEAL_FIELDS = tuple(f.name for f in fields(Deal))


@dataclass(frozen=True)
class HistoricalRevenue:
    """One past calendar month of forecast vs realised revenue."""
    month: str  # YYYY-MM
    forecasted: float
    actual: float


@dataclass(frozen=True)
class ForecastResult:
    """Scenario sums and pipeline composition for one target month."""
    conservative: float
    base: float
    optimistic: float
    pipeline_value: float
    committed_value: float
    uncommitted_value: float
    leads_value: float
    closed_won: float


@dataclass(frozen=True)
class HealthResult:
    """Team-level health percentages, independent of the target month."""
    mape: float
    hygiene_score: float
    freshness_score: float
    win_rate: float
    mom_growth: float


@dataclass(frozen=True)
class DashboardMetrics:
    conservative: float
    base: float
    optimistic: float
    pipeline_value: float
    committed_value: float
    uncommitted_value: float
    leads_value: float
    closed_won: float
    mape: float
    hygiene_score: float
    freshness_score: float
    win_rate: float
    mom_growth: float

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class DashboardReport:
    """Dashboard metrics plus the per-deal and whole-pipeline risk flags."""
    target_month: str
    strategy: str
    metrics: DashboardMetrics
    stale_deal_ids: Tuple[str, ...] = ()
    concentration_risk: bool = False
    hygiene: Dict[str, Any] = field(default_factory=dict)
