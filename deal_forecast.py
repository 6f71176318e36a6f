#!/usr/bin/env python3
"""
Deal Forecast & Pipeline-Health Engine

This module turns a snapshot of sales opportunities ("deals") and a monthly
historical-revenue series into scenario-based revenue projections
(conservative / base / optimistic), pipeline composition buckets and
pipeline health scores for the sales dashboard.

Usage:
    python deal_forecast.py --deals deals.csv --history history.csv --month 2025-06

Version: 1.0.0
"""

import argparse
import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional, Dict, Any, Iterable, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from dateutil.relativedelta import relativedelta

from deal_models import (
    Confidence,
    DashboardMetrics,
    DashboardReport,
    ForecastResult,
    HealthResult,
    MalformedDateError,
    Stage,
    ZeroActualError,
)
from deal_store import load_deals, load_history

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: CONFIGURATION
# =============================================================================

class Config:
    """Configuration parameters for the deal forecast engine."""

    STALE_THRESHOLD_DAYS: int = 7  # Days without activity before a deal is stale
    FRESHNESS_WINDOW_DAYS: int = 7  # Activity window counted as "fresh"

    # Concentration risk: top N deals holding more than this share of value
    CONCENTRATION_TOP_N: int = 2
    CONCENTRATION_THRESHOLD: float = 0.30

    # Date-threshold strategy rules
    CONSERVATIVE_NEXT_STEP_DAYS: int = 14
    BASE_NEXT_STEP_DAYS: int = 30
    OPTIMISTIC_LARGE_DEAL_AMOUNT: float = 100000.0

    # Forecast rule-set used when none is given
    FORECAST_STRATEGY: str = 'stage_direct'
    VALID_STRATEGIES: List[str] = ['stage_direct', 'date_threshold']

    # History rows with actual == 0: 'skip' (exclude from mean) or 'raise'
    MAPE_ZERO_ACTUAL_POLICY: str = 'skip'
    VALID_MAPE_POLICIES: List[str] = ['skip', 'raise']

    CLOSED_STAGES: List[str] = [Stage.WON.value, Stage.LOST.value]

    # Frame column -> hygiene check label
    HYGIENE_FIELDS: Dict[str, str] = {
        'Stage': 'stage',
        'Confidence': 'confidence',
        'NextStep': 'next_step',
        'NextStepDate_Raw': 'next_step_date',
        'Amount': 'amount',
        'CloseDate_Raw': 'close_date',
    }


# =============================================================================
# SECTION 2: HELPER FUNCTIONS
# =============================================================================

# Strings pandas resolves to the clock or to a missing value
RESERVED_DATE_WORDS = {'now', 'today', 'nan', 'nat', 'none', 'null'}


def parse_date(date_val: Any) -> pd.Timestamp:
    """
    Parse a date value to a tz-naive UTC pandas Timestamp.

    Missing values (None, NaN, blank strings) give NaT. Anything else that
    cannot be parsed is a caller error and raises MalformedDateError.

    Args:
        date_val: Date value to parse (ISO string, date, datetime or Timestamp)

    Returns:
        pd.Timestamp: Parsed date, or NaT when missing

    Raises:
        MalformedDateError: If the value is present but unparseable
    """
    if date_val is None or date_val is pd.NaT:
        return pd.NaT
    if isinstance(date_val, float) and np.isnan(date_val):
        return pd.NaT
    if isinstance(date_val, str):
        if date_val.strip() == '':
            return pd.NaT
        if date_val.strip().lower() in RESERVED_DATE_WORDS:
            raise MalformedDateError(f"Could not parse date: {date_val!r}")
    elif not isinstance(date_val, (date, datetime, pd.Timestamp, np.datetime64)):
        raise MalformedDateError(f"Unsupported date value: {date_val!r}")

    try:
        ts = pd.Timestamp(date_val)
    except (ValueError, TypeError) as e:
        raise MalformedDateError(f"Could not parse date: {date_val!r}") from e

    if pd.isna(ts):
        return pd.NaT
    if ts.tzinfo is not None:
        ts = ts.tz_convert('UTC').tz_localize(None)
    return ts


def parse_month(month_val: Any) -> pd.Period:
    """
    Parse a calendar month identifier to a monthly pandas Period.

    Accepts 'YYYY-MM' strings, full ISO dates, date/datetime/Timestamp values
    and Periods.
    """
    if isinstance(month_val, pd.Period):
        return month_val.asfreq('M')
    if isinstance(month_val, str):
        if month_val.strip().lower() in RESERVED_DATE_WORDS:
            raise MalformedDateError(f"Could not parse month: {month_val!r}")
        try:
            return pd.Period(month_val.strip(), freq='M')
        except (ValueError, TypeError) as e:
            raise MalformedDateError(f"Could not parse month: {month_val!r}") from e

    ts = parse_date(month_val)
    if pd.isna(ts):
        raise MalformedDateError(f"Month value is missing: {month_val!r}")
    return ts.to_period('M')


def month_bounds(period: pd.Period) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """
    Get the [start, end) timestamps of a calendar month.

    Args:
        period: Monthly period

    Returns:
        tuple: (first instant of the month, first instant of the next month)
    """
    start = pd.Timestamp(year=period.year, month=period.month, day=1)
    end = start + relativedelta(months=1)
    return start, pd.Timestamp(end)


def resolve_now(now: Any = None) -> pd.Timestamp:
    """Return `now` parsed, or the current UTC clock when not given."""
    if now is None:
        return pd.Timestamp.now(tz='UTC').tz_localize(None)
    ts = parse_date(now)
    if pd.isna(ts):
        raise MalformedDateError(f"'now' is missing: {now!r}")
    return ts


def days_between(later: pd.Timestamp, earlier: pd.Timestamp) -> Optional[int]:
    """
    Whole days from `earlier` to `later`, truncated toward zero.

    Returns None when either side is NaT.
    """
    if pd.isna(later) or pd.isna(earlier):
        return None
    return int(np.trunc((later - earlier) / pd.Timedelta(days=1)))


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safe division with default value for zero denominator.

    Args:
        numerator: Numerator value
        denominator: Denominator value
        default: Default value if denominator is zero

    Returns:
        float: Result of division or default
    """
    if denominator is None or pd.isna(denominator) or denominator == 0:
        return default
    if numerator is None or pd.isna(numerator):
        return default
    result = numerator / denominator
    if np.isinf(result) or np.isnan(result):
        return default
    return float(result)


def has_value(val: Any) -> bool:
    """Check if a value is non-empty."""
    if val is None:
        return False
    if isinstance(val, str):
        return val.strip() != ''
    if pd.api.types.is_scalar(val) and pd.isna(val):
        return False
    return True


def _enum_value(val: Any) -> Any:
    if isinstance(val, Enum):
        return val.value
    return val


def _get(record: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Deal-like record (dataclass or mapping)."""
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


# =============================================================================
# SECTION 3: FRAME BUILDERS
# =============================================================================

def deals_to_frame(deals: Union[Iterable[Any], pd.DataFrame]) -> pd.DataFrame:
    """
    Build the engine's working DataFrame from a deal collection.

    Accepts Deal records, mappings keyed by Deal field names, or a DataFrame
    with Deal field names as columns. The input is never modified.

    Raises:
        MalformedDateError: If any close, activity or next-step date is malformed
    """
    if isinstance(deals, pd.DataFrame):
        deals = deals.to_dict('records')

    rows = []
    for deal in deals:
        close_raw = _get(deal, 'close_date')
        next_step_raw = _get(deal, 'next_step_date')
        rows.append({
            'DealId': _get(deal, 'id'),
            'AccountId': _get(deal, 'account_id'),
            'OwnerName': _get(deal, 'owner_name'),
            'Title': _get(deal, 'title', ''),
            'Amount': _get(deal, 'amount'),
            'Stage': _enum_value(_get(deal, 'stage')),
            'Confidence': _enum_value(_get(deal, 'confidence')),
            'NextStep': _get(deal, 'next_step'),
            'CloseDate_Raw': close_raw,
            'NextStepDate_Raw': next_step_raw,
            'CloseDate': parse_date(close_raw),
            'LastActivityDate': parse_date(_get(deal, 'last_activity_date')),
            'NextStepDate': parse_date(next_step_raw),
        })

    columns = [
        'DealId', 'AccountId', 'OwnerName', 'Title', 'Amount', 'Stage', 'Confidence',
        'NextStep', 'CloseDate_Raw', 'NextStepDate_Raw', 'CloseDate',
        'LastActivityDate', 'NextStepDate'
    ]
    df = pd.DataFrame(rows, columns=columns)

    df['Amount'] = pd.to_numeric(df['Amount'], errors='coerce').astype(float)
    for col in ['CloseDate', 'LastActivityDate', 'NextStepDate']:
        df[col] = pd.to_datetime(df[col])

    return df


def history_to_frame(history: Union[Iterable[Any], pd.DataFrame, None]) -> pd.DataFrame:
    """
    Build a chronologically ordered history DataFrame.

    Rows are sorted by calendar month; rows for the same month keep their
    input order.
    """
    if history is None:
        history = []
    if isinstance(history, pd.DataFrame):
        history = history.to_dict('records')

    rows = [
        {
            'Month': parse_month(_get(h, 'month')),
            'Forecasted': _get(h, 'forecasted'),
            'Actual': _get(h, 'actual'),
        }
        for h in history
    ]
    df = pd.DataFrame(rows, columns=['Month', 'Forecasted', 'Actual'])
    df['Forecasted'] = pd.to_numeric(df['Forecasted'], errors='coerce').astype(float)
    df['Actual'] = pd.to_numeric(df['Actual'], errors='coerce').astype(float)

    if len(df) > 1:
        df['_Order'] = df['Month'].apply(lambda p: p.ordinal)
        df = df.sort_values('_Order', kind='mergesort').drop(columns='_Order')
    return df.reset_index(drop=True)


def _active_mask(frame: pd.DataFrame) -> pd.Series:
    return ~frame['Stage'].isin(Config.CLOSED_STAGES)


def _days_since(dates: pd.Series, now: pd.Timestamp) -> pd.Series:
    """Whole days from each date up to `now`, truncated; NaN where missing."""
    return np.trunc((now - dates) / pd.Timedelta(days=1))


def _days_until(dates: pd.Series, now: pd.Timestamp) -> pd.Series:
    """Whole days from `now` up to each date, truncated; NaN where missing."""
    return np.trunc((dates - now) / pd.Timedelta(days=1))


def _in_month(dates: pd.Series, period: pd.Period) -> pd.Series:
    start, end = month_bounds(period)
    return (dates >= start) & (dates < end)


def _sum_amount(frame: pd.DataFrame) -> float:
    if len(frame) == 0:
        return 0.0
    return float(frame['Amount'].sum())


# =============================================================================
# SECTION 4: STALENESS & CONCENTRATION RISK
# =============================================================================

def is_stale(deal: Any, now: Any = None,
             threshold_days: Optional[int] = None) -> bool:
    """
    Check whether a deal lacks recent activity.

    A deal is stale when the whole days since its last activity exceed the
    threshold. Exactly `threshold_days` is not stale. A deal with no recorded
    activity date is stale.

    Args:
        deal: Deal record or mapping
        now: Reference time (defaults to the current clock)
        threshold_days: Override for Config.STALE_THRESHOLD_DAYS

    Returns:
        bool: True if stale
    """
    if threshold_days is None:
        threshold_days = Config.STALE_THRESHOLD_DAYS

    days = days_between(resolve_now(now), parse_date(_get(deal, 'last_activity_date')))
    if days is None:
        return True
    return days > threshold_days


def find_stale_deals(deals: Iterable[Any], now: Any = None) -> List[Any]:
    """Return the stale deals, in input order."""
    now_ts = resolve_now(now)
    return [d for d in deals if is_stale(d, now_ts)]


def prioritize_deals(deals: Iterable[Any], now: Any = None) -> List[Any]:
    """
    Rank deals for a rep's weekly review.

    Stale deals come first, then larger amounts. Ties keep input order.
    """
    now_ts = resolve_now(now)

    def priority(deal):
        amount = _get(deal, 'amount') or 0.0
        return (0 if is_stale(deal, now_ts) else 1, -amount)

    return sorted(deals, key=priority)


def has_concentration_risk(deals: Iterable[Any], total_value: float) -> bool:
    """
    Determine if pipeline value is concentrated in a few large deals.

    Risk means the top Config.CONCENTRATION_TOP_N amounts make up more than
    Config.CONCENTRATION_THRESHOLD of `total_value`. A zero total is never
    concentrated.

    Args:
        deals: Deal records or mappings
        total_value: Denominator value (usually the dashboard pipeline value)

    Returns:
        bool: True if concentrated
    """
    if total_value == 0:
        return False

    amounts = pd.Series([_get(d, 'amount') for d in deals], dtype='float64')
    top_total = float(amounts.nlargest(Config.CONCENTRATION_TOP_N).sum())

    return (top_total / total_value) > Config.CONCENTRATION_THRESHOLD


# =============================================================================
# SECTION 5: FORECAST STRATEGIES
# =============================================================================

class ForecastStrategy:
    """
    Scenario rule-set for the forecast engine.

    A strategy sees the active deals closing in the target month and returns
    the amounts that count toward 'conservative', 'base' and the optimistic
    upside on top of base. Realised revenue is added by the engine.
    """

    name: str = ''

    def scenario_sums(self, month_deals: pd.DataFrame, now: pd.Timestamp) -> Dict[str, float]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class StageDirectStrategy(ForecastStrategy):
    """
    Canonical rule-set: stage maps directly to forecast tier.

    COMMITTED counts toward base (and conservative when HIGH confidence),
    UNCOMMITTED is optimistic upside, LEAD is excluded from every tier.
    """

    name = 'stage_direct'

    def scenario_sums(self, month_deals: pd.DataFrame, now: pd.Timestamp) -> Dict[str, float]:
        committed = month_deals['Stage'] == Stage.COMMITTED.value
        uncommitted = month_deals['Stage'] == Stage.UNCOMMITTED.value
        high = month_deals['Confidence'] == Confidence.HIGH.value

        return {
            'conservative': _sum_amount(month_deals[committed & high]),
            'base': _sum_amount(month_deals[committed]),
            'optimistic_delta': _sum_amount(month_deals[uncommitted]),
        }


class DateThresholdStrategy(ForecastStrategy):
    """
    Earlier rule-set gated on confidence, next-step dates and activity recency.

    - Conservative: HIGH confidence, next step within 14 days, not stale
    - Base: HIGH or MEDIUM confidence, next step within 30 days
    - Upside: deals outside base that are LOW confidence, or large early leads
    """

    name = 'date_threshold'

    def scenario_sums(self, month_deals: pd.DataFrame, now: pd.Timestamp) -> Dict[str, float]:
        days_to_next_step = _days_until(month_deals['NextStepDate'], now)
        days_since_activity = _days_since(month_deals['LastActivityDate'], now)

        high = month_deals['Confidence'] == Confidence.HIGH.value
        medium = month_deals['Confidence'] == Confidence.MEDIUM.value
        low = month_deals['Confidence'] == Confidence.LOW.value

        in_conservative = (
            high &
            (days_to_next_step <= Config.CONSERVATIVE_NEXT_STEP_DAYS) &
            (days_since_activity <= Config.STALE_THRESHOLD_DAYS)
        )
        in_base = (high | medium) & (days_to_next_step <= Config.BASE_NEXT_STEP_DAYS)

        large_early = (
            (month_deals['Amount'] > Config.OPTIMISTIC_LARGE_DEAL_AMOUNT) &
            (month_deals['Stage'] == Stage.LEAD.value)
        )
        upside = ~in_base & (low | large_early)

        return {
            'conservative': _sum_amount(month_deals[in_conservative]),
            'base': _sum_amount(month_deals[in_base]),
            'optimistic_delta': _sum_amount(month_deals[upside]),
        }


STRATEGIES: Dict[str, type] = {
    StageDirectStrategy.name: StageDirectStrategy,
    DateThresholdStrategy.name: DateThresholdStrategy,
}


def get_strategy(strategy: Union[str, ForecastStrategy, None] = None) -> ForecastStrategy:
    """
    Resolve a forecast strategy by name.

    Args:
        strategy: Strategy name, instance, or None for Config.FORECAST_STRATEGY

    Returns:
        ForecastStrategy: Strategy instance

    Raises:
        ValueError: If the name is not a known strategy
    """
    if isinstance(strategy, ForecastStrategy):
        return strategy
    if strategy is None:
        strategy = Config.FORECAST_STRATEGY

    if strategy not in STRATEGIES:
        raise ValueError(
            f"Unknown forecast strategy: {strategy}. Valid strategies: {Config.VALID_STRATEGIES}"
        )
    return STRATEGIES[strategy]()


# =============================================================================
# SECTION 6: FORECAST ENGINE
# =============================================================================

def compute_forecast(deals: Union[Iterable[Any], pd.DataFrame], target_month: Any,
                     history: Optional[Iterable[Any]] = None, now: Any = None,
                     strategy: Union[str, ForecastStrategy, None] = None) -> ForecastResult:
    """
    Calculate scenario forecasts and pipeline composition for one month.

    Active deals closing in the target month are bucketed by the strategy;
    revenue already won in that month is folded into conservative, base,
    optimistic, pipeline and committed values.

    Args:
        deals: Deal collection
        target_month: Calendar month to forecast
        history: Historical revenue (not used by the forecast fields)
        now: Reference time for date-based strategies
        strategy: Strategy name or instance

    Returns:
        ForecastResult: Forecast fields of the dashboard metrics
    """
    frame = deals_to_frame(deals)
    period = parse_month(target_month)
    now_ts = resolve_now(now)
    rule = get_strategy(strategy)

    logger.info(f"Computing {rule.name} forecast for {period} over {len(frame)} deals...")

    in_month = _in_month(frame['CloseDate'], period)
    month_deals = frame[_active_mask(frame) & in_month]
    won_in_month = frame[(frame['Stage'] == Stage.WON.value) & in_month]

    realized_revenue = _sum_amount(won_in_month)

    # Pipeline composition (stage-direct regardless of strategy)
    pipeline_value = _sum_amount(month_deals)
    committed_value = _sum_amount(month_deals[month_deals['Stage'] == Stage.COMMITTED.value])
    uncommitted_value = _sum_amount(month_deals[month_deals['Stage'] == Stage.UNCOMMITTED.value])
    leads_value = _sum_amount(month_deals[month_deals['Stage'] == Stage.LEAD.value])

    sums = rule.scenario_sums(month_deals, now_ts)

    # Forecast means "end of month landing": already won + predicted to win
    conservative = sums['conservative'] + realized_revenue
    base = sums['base'] + realized_revenue
    optimistic = base + sums['optimistic_delta']

    logger.debug(
        f"{len(month_deals)} open deals and {len(won_in_month)} won deals in {period}; "
        f"realized revenue {realized_revenue:,.2f}"
    )

    return ForecastResult(
        conservative=conservative,
        base=base,
        optimistic=optimistic,
        pipeline_value=pipeline_value + realized_revenue,
        committed_value=committed_value + realized_revenue,
        uncommitted_value=uncommitted_value,
        leads_value=leads_value,
        closed_won=realized_revenue,
    )


# =============================================================================
# SECTION 7: HEALTH METRICS
# =============================================================================

def calculate_win_rate(frame: pd.DataFrame) -> float:
    """Won / (Won + Lost) x 100 over all deals; 0 with no closed deals."""
    won = int((frame['Stage'] == Stage.WON.value).sum())
    lost = int((frame['Stage'] == Stage.LOST.value).sum())
    return safe_divide(won, won + lost) * 100


def _hygiene_checks(active: pd.DataFrame) -> pd.DataFrame:
    """Per-field pass/fail table for the hygiene score."""
    checks = pd.DataFrame(index=active.index)
    for col, label in Config.HYGIENE_FIELDS.items():
        if col == 'Amount':
            checks[label] = active['Amount'] > 0
        else:
            checks[label] = active[col].map(has_value).astype(bool)
    return checks


def calculate_hygiene_score(frame: pd.DataFrame) -> float:
    """
    Percentage of active deals with every required field filled in.

    Required: stage, confidence, next step, next step date, amount > 0 and
    close date. No active deals scores 100.
    """
    active = frame[_active_mask(frame)]
    if len(active) == 0:
        return 100.0

    passing = int(_hygiene_checks(active).all(axis=1).sum())
    return safe_divide(passing, len(active)) * 100


def hygiene_breakdown(deals: Union[Iterable[Any], pd.DataFrame]) -> Dict[str, int]:
    """Get breakdown of hygiene completion across active deals."""
    frame = deals if isinstance(deals, pd.DataFrame) and 'Stage' in deals.columns \
        else deals_to_frame(deals)
    active = frame[_active_mask(frame)]
    checks = _hygiene_checks(active)

    breakdown = {
        'total': len(active),
        'complete': int(checks.all(axis=1).sum()) if len(active) else 0,
    }
    for label in Config.HYGIENE_FIELDS.values():
        breakdown[f'missing_{label}'] = int((~checks[label]).sum()) if len(active) else 0
    return breakdown


def calculate_freshness_score(frame: pd.DataFrame, now: pd.Timestamp) -> float:
    """Percentage of active deals with activity in the freshness window."""
    active = frame[_active_mask(frame)]
    if len(active) == 0:
        return 100.0

    days = _days_since(active['LastActivityDate'], now)
    fresh = int((days <= Config.FRESHNESS_WINDOW_DAYS).sum())
    return safe_divide(fresh, len(active)) * 100


def calculate_mape(history: Union[Iterable[Any], pd.DataFrame, None],
                   policy: Optional[str] = None) -> float:
    """
    Mean Absolute Percentage Error of historical forecasts.

    MAPE = mean(|(actual - forecasted) / actual|) x 100

    Rows with actual == 0 have no defined error term. Under the 'skip' policy
    they are excluded from the mean; under 'raise' they raise ZeroActualError.

    Args:
        history: Historical revenue rows
        policy: Override for Config.MAPE_ZERO_ACTUAL_POLICY

    Returns:
        float: MAPE percentage, 0 for empty history
    """
    if policy is None:
        policy = Config.MAPE_ZERO_ACTUAL_POLICY
    if policy not in Config.VALID_MAPE_POLICIES:
        raise ValueError(f"Unknown MAPE policy: {policy}. Valid policies: {Config.VALID_MAPE_POLICIES}")

    hist = history if isinstance(history, pd.DataFrame) and 'Actual' in history.columns \
        else history_to_frame(history)
    if len(hist) == 0:
        return 0.0

    zero_actual = hist['Actual'] == 0
    if zero_actual.any():
        months = [str(m) for m in hist.loc[zero_actual, 'Month']]
        if policy == 'raise':
            raise ZeroActualError(f"History rows with zero actual revenue: {months}")
        logger.warning(f"Excluding {len(months)} history rows with zero actual from MAPE: {months}")
        hist = hist[~zero_actual]

    if len(hist) == 0:
        return 0.0

    errors = ((hist['Actual'] - hist['Forecasted']) / hist['Actual']).abs()
    return float(errors.mean() * 100)


def calculate_mom_growth(history: Union[Iterable[Any], pd.DataFrame, None]) -> float:
    """
    Month-over-month growth of actual revenue over the last two months.

    Needs at least two history rows and a non-zero previous actual; else 0.
    """
    hist = history if isinstance(history, pd.DataFrame) and 'Actual' in history.columns \
        else history_to_frame(history)
    if len(hist) < 2:
        return 0.0

    last_month = hist['Actual'].iloc[-1]
    prev_month = hist['Actual'].iloc[-2]
    return safe_divide(last_month - prev_month, prev_month) * 100


def compute_health(deals: Union[Iterable[Any], pd.DataFrame],
                   history: Optional[Iterable[Any]] = None, now: Any = None,
                   mape_policy: Optional[str] = None) -> HealthResult:
    """
    Calculate pipeline health metrics.

    All metrics summarise the whole deal set and history, not a single month.

    Args:
        deals: Deal collection
        history: Historical revenue rows
        now: Reference time for freshness
        mape_policy: Zero-actual handling for MAPE (defaults to Config)

    Returns:
        HealthResult: Health fields of the dashboard metrics
    """
    frame = deals_to_frame(deals)
    hist = history_to_frame(history)
    now_ts = resolve_now(now)

    logger.info(f"Computing health metrics over {len(frame)} deals and {len(hist)} history months...")

    return HealthResult(
        mape=calculate_mape(hist, mape_policy),
        hygiene_score=calculate_hygiene_score(frame),
        freshness_score=calculate_freshness_score(frame, now_ts),
        win_rate=calculate_win_rate(frame),
        mom_growth=calculate_mom_growth(hist),
    )


# =============================================================================
# SECTION 8: DASHBOARD ASSEMBLY
# =============================================================================

def assemble_dashboard_metrics(forecast: ForecastResult, health: HealthResult) -> DashboardMetrics:
    """Merge forecast and health results into one dashboard record."""
    return DashboardMetrics(**asdict(forecast), **asdict(health))


def calculate_dashboard_metrics(deals: Union[Iterable[Any], pd.DataFrame], target_month: Any,
                                history: Optional[Iterable[Any]] = None, now: Any = None,
                                strategy: Union[str, ForecastStrategy, None] = None,
                                mape_policy: Optional[str] = None) -> DashboardMetrics:
    """
    Calculate the comprehensive forecast and health metrics.

    Args:
        deals: Deal collection
        target_month: Calendar month for the forecast fields
        history: Historical revenue for reliability and growth
        now: Reference time (defaults to the current clock)
        strategy: Forecast strategy name or instance
        mape_policy: Zero-actual handling for MAPE (defaults to Config)

    Returns:
        DashboardMetrics: Combined metrics
    """
    if not isinstance(deals, pd.DataFrame):
        deals = list(deals)
    if history is not None and not isinstance(history, pd.DataFrame):
        history = list(history)
    now_ts = resolve_now(now)

    forecast = compute_forecast(deals, target_month, history, now_ts, strategy)
    health = compute_health(deals, history, now_ts, mape_policy)
    return assemble_dashboard_metrics(forecast, health)


def build_dashboard(deals: Sequence[Any], target_month: Any,
                    history: Optional[Sequence[Any]] = None, now: Any = None,
                    strategy: Union[str, ForecastStrategy, None] = None,
                    mape_policy: Optional[str] = None) -> DashboardReport:
    """
    Build the full dashboard report.

    Concentration risk is evaluated over all deals against the dashboard's
    pipeline value for the target month.
    """
    deals = list(deals)
    history = list(history) if history is not None else []
    now_ts = resolve_now(now)
    rule = get_strategy(strategy)

    metrics = calculate_dashboard_metrics(deals, target_month, history, now_ts, rule, mape_policy)
    stale_ids = tuple(_get(d, 'id') for d in find_stale_deals(deals, now_ts))
    concentration = has_concentration_risk(deals, metrics.pipeline_value)

    if concentration:
        logger.warning(
            f"Concentration risk: top {Config.CONCENTRATION_TOP_N} deals exceed "
            f"{Config.CONCENTRATION_THRESHOLD:.0%} of pipeline value"
        )
    if stale_ids:
        logger.info(f"{len(stale_ids)} deals have no activity in {Config.STALE_THRESHOLD_DAYS} days")

    return DashboardReport(
        target_month=str(parse_month(target_month)),
        strategy=rule.name,
        metrics=metrics,
        stale_deal_ids=stale_ids,
        concentration_risk=concentration,
        hygiene=hygiene_breakdown(deals),
    )


# =============================================================================
# SECTION 9: OUTPUT GENERATION FUNCTIONS
# =============================================================================

def generate_metrics_output(report: DashboardReport) -> pd.DataFrame:
    """
    Create the headline metrics table.

    Args:
        report: Dashboard report

    Returns:
        pd.DataFrame: One row per metric
    """
    logger.info("Generating metrics output...")

    rows = [{'Metric': name, 'Value': value} for name, value in report.metrics.to_dict().items()]
    rows.append({'Metric': 'concentration_risk', 'Value': report.concentration_risk})
    rows.append({'Metric': 'stale_deals', 'Value': len(report.stale_deal_ids)})

    metrics = pd.DataFrame(rows)
    metrics.insert(0, 'TargetMonth', report.target_month)
    metrics.insert(1, 'Strategy', report.strategy)
    return metrics


def generate_composition_output(metrics: DashboardMetrics) -> pd.DataFrame:
    """Forecast composition segments for the target month."""
    return pd.DataFrame([
        {'Segment': 'Closed Won', 'Value': metrics.closed_won},
        {'Segment': 'Committed', 'Value': metrics.committed_value},
        {'Segment': 'Uncommitted', 'Value': metrics.uncommitted_value},
        {'Segment': 'Leads', 'Value': metrics.leads_value},
    ])


def generate_trend_output(history: Optional[Iterable[Any]]) -> pd.DataFrame:
    """
    Create the historical forecast vs actual trend.

    Args:
        history: Historical revenue rows

    Returns:
        pd.DataFrame: Month, Actual, Forecast and absolute percentage error
    """
    logger.info("Generating trend output...")

    hist = history_to_frame(history)
    if len(hist) == 0:
        return pd.DataFrame(columns=['Month', 'Actual', 'Forecast', 'APE'])

    trend = pd.DataFrame({
        'Month': hist['Month'].astype(str),
        'Actual': hist['Actual'],
        'Forecast': hist['Forecasted'],
    })
    trend['APE'] = trend.apply(
        lambda r: safe_divide(abs(r['Actual'] - r['Forecast']), abs(r['Actual']), default=np.nan) * 100,
        axis=1
    ).round(2)
    return trend


def generate_deal_review_output(deals: Sequence[Any], now: Any = None) -> pd.DataFrame:
    """
    Create the per-deal review list in rep priority order.

    Args:
        deals: Deal collection
        now: Reference time

    Returns:
        pd.DataFrame: Prioritised deals with staleness and hygiene flags
    """
    logger.info("Generating deal review output...")

    now_ts = resolve_now(now)
    ordered = prioritize_deals(deals, now_ts)
    frame = deals_to_frame(ordered)

    if len(frame) == 0:
        return pd.DataFrame(columns=[
            'DealId', 'Title', 'OwnerName', 'Stage', 'Confidence', 'Amount',
            'CloseDate', 'DaysSinceActivity', 'IsStale', 'HygieneComplete'
        ])

    review = frame[['DealId', 'Title', 'OwnerName', 'Stage', 'Confidence', 'Amount']].copy()
    review['CloseDate'] = frame['CloseDate'].dt.strftime('%Y-%m-%d')
    review['DaysSinceActivity'] = _days_since(frame['LastActivityDate'], now_ts)
    review['IsStale'] = [is_stale(d, now_ts) for d in ordered]
    review['HygieneComplete'] = _hygiene_checks(frame).all(axis=1)
    return review.reset_index(drop=True)


def generate_hygiene_output(report: DashboardReport) -> pd.DataFrame:
    """Hygiene breakdown as a two-column table."""
    return pd.DataFrame(
        [{'Check': k, 'Count': v} for k, v in report.hygiene.items()]
    )


def export_to_excel(metrics: pd.DataFrame, composition: pd.DataFrame,
                    trend: pd.DataFrame, review: pd.DataFrame,
                    hygiene: pd.DataFrame, output_dir: str) -> str:
    """
    Write all outputs to an Excel workbook.

    Args:
        metrics: Metrics DataFrame
        composition: Composition DataFrame
        trend: Trend DataFrame
        review: Deal review DataFrame
        hygiene: Hygiene breakdown DataFrame
        output_dir: Output directory path

    Returns:
        str: Path of the written workbook
    """
    logger.info(f"Exporting to Excel in: {output_dir}")

    os.makedirs(output_dir, exist_ok=True)

    workbook_path = os.path.join(output_dir, 'Dashboard_Metrics.xlsx')
    with pd.ExcelWriter(workbook_path, engine='openpyxl') as writer:
        metrics.to_excel(writer, sheet_name='Metrics', index=False)
        composition.to_excel(writer, sheet_name='Composition', index=False)
        trend.to_excel(writer, sheet_name='Trend', index=False)
        review.to_excel(writer, sheet_name='Deal_Review', index=False)
        hygiene.to_excel(writer, sheet_name='Hygiene', index=False)
    logger.info(f"Created: {workbook_path}")

    return workbook_path


# =============================================================================
# SECTION 10: MAIN ORCHESTRATION
# =============================================================================

def run_dashboard_forecast(deals_path: str, history_path: Optional[str], target_month: str,
                           output_dir: str, now: Optional[str] = None,
                           strategy: Optional[str] = None,
                           mape_policy: Optional[str] = None) -> DashboardReport:
    """
    Orchestrate the dashboard calculation from CRM export files.

    Args:
        deals_path: Path to the deals export (CSV or Excel)
        history_path: Path to the historical revenue export, or None
        target_month: Target month (YYYY-MM)
        output_dir: Output directory
        now: Reference time (ISO-8601), defaults to the current clock
        strategy: Forecast strategy name
        mape_policy: Zero-actual handling for MAPE (defaults to Config)

    Returns:
        DashboardReport: Dashboard report
    """
    logger.info("=" * 60)
    logger.info("Starting Dashboard Forecast")
    logger.info("=" * 60)

    start_time = datetime.now()

    try:
        # 1. Load data
        logger.info("\n[Step 1/3] Loading data...")
        deals = load_deals(deals_path)
        history = load_history(history_path) if history_path else []

        # 2. Calculate metrics
        logger.info("\n[Step 2/3] Calculating metrics...")
        now_ts = resolve_now(now)
        report = build_dashboard(deals, target_month, history, now_ts, strategy, mape_policy)

        # 3. Generate outputs and export
        logger.info("\n[Step 3/3] Exporting outputs...")
        export_to_excel(
            generate_metrics_output(report),
            generate_composition_output(report.metrics),
            generate_trend_output(history),
            generate_deal_review_output(deals, now_ts),
            generate_hygiene_output(report),
            output_dir,
        )

        elapsed = (datetime.now() - start_time).total_seconds()
        m = report.metrics

        logger.info("\n" + "=" * 60)
        logger.info(f"Dashboard complete in {elapsed:.2f} seconds")
        logger.info(f"Output saved to: {output_dir}")
        logger.info("=" * 60)
        logger.info(f"\nForecast {report.target_month} ({report.strategy}):")
        logger.info(f"  Conservative: {m.conservative:,.0f}")
        logger.info(f"  Base:         {m.base:,.0f}")
        logger.info(f"  Optimistic:   {m.optimistic:,.0f}")
        logger.info(f"  MAPE: {m.mape:.1f}%  Hygiene: {m.hygiene_score:.0f}%  "
                    f"Win rate: {m.win_rate:.0f}%  MoM: {m.mom_growth:+.1f}%")

        return report

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Invalid data format: {e}")
        sys.exit(1)


def main():
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description='Deal Forecast - Scenario forecasts and pipeline health for the sales dashboard',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python deal_forecast.py --deals deals.csv --history history.csv --month 2025-06
  python deal_forecast.py --deals deals.xlsx --month 2025-06 --strategy date_threshold --output results/
        """
    )

    parser.add_argument(
        '--deals', '-d',
        required=True,
        help='Path to the deals export (CSV or Excel)'
    )

    parser.add_argument(
        '--history', '-H',
        required=False,
        default=None,
        help='Path to the historical revenue export (optional)'
    )

    parser.add_argument(
        '--month', '-m',
        required=True,
        help='Target month for the forecast (YYYY-MM)'
    )

    parser.add_argument(
        '--now',
        required=False,
        default=None,
        help='Reference time as ISO-8601 (default: current time)'
    )

    parser.add_argument(
        '--strategy', '-s',
        required=False,
        default=Config.FORECAST_STRATEGY,
        choices=Config.VALID_STRATEGIES,
        help=f'Forecast rule-set (default: {Config.FORECAST_STRATEGY})'
    )

    parser.add_argument(
        '--mape-zero-actual',
        required=False,
        default=Config.MAPE_ZERO_ACTUAL_POLICY,
        choices=Config.VALID_MAPE_POLICIES,
        help='How to treat history rows with zero actual revenue'
    )

    parser.add_argument(
        '--output', '-o',
        required=False,
        default='output',
        help='Output directory (default: output/)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    run_dashboard_forecast(
        deals_path=args.deals,
        history_path=args.history,
        target_month=args.month,
        output_dir=args.output,
        now=args.now,
        strategy=args.strategy,
        mape_policy=args.mape_zero_actual,
    )


if __name__ == '__main__':
    main()
