#!/usr/bin/env python3
"""
Deal Store Module

Loads CRM exports (deals, accounts, historical revenue) into the record types
used by the forecast engine, and holds them in an in-memory store.

Key transformations:
1. Column renaming from CRM export names (camelCase) to record fields
2. Numeric coercion of amount, probability and revenue columns
3. Date columns normalised to ISO-8601 strings (Excel gives datetimes)
4. Missing text replaced with empty strings

The store hands out immutable snapshots; the engine never sees the store
itself.

Version: 1.0.0
"""

import logging
import os
import uuid
from collections import OrderedDict
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from deal_models import DEAL_FIELDS, Account, Activity, ActivityType, Deal, HistoricalRevenue

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Column renaming map (CRM export -> record field)
DEAL_COLUMN_MAP = {
    'dealId': 'id',
    'accountId': 'account_id',
    'ownerId': 'owner_id',
    'ownerName': 'owner_name',
    'closeDate': 'close_date',
    'lastActivityDate': 'last_activity_date',
    'nextStep': 'next_step',
    'nextStepDate': 'next_step_date',
    'createdAt': 'created_at',
    'updatedAt': 'updated_at',
}

ACCOUNT_COLUMN_MAP = {
    'accountId': 'id',
    'contactFirstName': 'contact_first_name',
    'contactLastName': 'contact_last_name',
}

REQUIRED_DEAL_COLUMNS = ['id', 'amount', 'stage', 'close_date', 'last_activity_date']
REQUIRED_ACCOUNT_COLUMNS = ['id', 'name']
REQUIRED_HISTORY_COLUMNS = ['month', 'forecasted', 'actual']

DATE_COLUMNS = ['close_date', 'last_activity_date', 'next_step_date', 'created_at', 'updated_at']


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _clean_text(val: Any) -> str:
    """Convert a cell to a stripped string, '' when missing."""
    if val is None or (not isinstance(val, str) and pd.isna(val)):
        return ''
    return str(val).strip()


def _clean_date(val: Any) -> str:
    """
    Normalise a date cell to an ISO-8601 string.

    Excel cells arrive as datetimes and are formatted; strings are passed
    through untouched so malformed values still reach the engine.
    """
    if isinstance(val, (pd.Timestamp, datetime)):
        if pd.isna(val):
            return ''
        return val.isoformat()
    return _clean_text(val)


def _clean_month(val: Any) -> str:
    """Normalise a month cell to YYYY-MM where it is a datetime."""
    if isinstance(val, (pd.Timestamp, datetime)) and not pd.isna(val):
        return val.strftime('%Y-%m')
    return _clean_text(val)


def _read_table(filepath: str) -> pd.DataFrame:
    """
    Read a CSV or Excel export.

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"File not found: {filepath}")

    file_ext = os.path.splitext(filepath)[1].lower()
    if file_ext in ('.xlsx', '.xls'):
        df = pd.read_excel(filepath, engine='openpyxl')
        logger.info(f"Loaded {len(df)} rows from Excel file")
    else:
        df = pd.read_csv(filepath, dtype=str)
        logger.info(f"Loaded {len(df)} rows from CSV file")
    return df


def _check_columns(df: pd.DataFrame, required: List[str]) -> None:
    missing_cols = [col for col in required if col not in df.columns]
    if missing_cols:
        raise ValueError(f"Missing required columns: {missing_cols}")


# =============================================================================
# TRANSFORMS
# =============================================================================

def transform_deal_export(df_raw: pd.DataFrame) -> List[Deal]:
    """
    Transform a raw CRM deal export into Deal records.

    Args:
        df_raw: Raw deal export

    Returns:
        list: Deal records in export order

    Raises:
        ValueError: If required columns are missing
    """
    logger.info(f"Starting transformation of {len(df_raw)} raw deal rows...")

    df = df_raw.rename(columns=DEAL_COLUMN_MAP).copy()
    _check_columns(df, REQUIRED_DEAL_COLUMNS)

    # Optional columns default to empty
    for col in DEAL_FIELDS:
        if col not in df.columns and col != 'activities':
            df[col] = None

    df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0).astype(float)
    df['probability'] = pd.to_numeric(df['probability'], errors='coerce').fillna(0).astype(int)

    for col in DATE_COLUMNS:
        df[col] = df[col].apply(_clean_date)

    text_cols = ['id', 'account_id', 'owner_id', 'owner_name', 'title', 'stage',
                 'confidence', 'next_step', 'currency']
    for col in text_cols:
        df[col] = df[col].apply(_clean_text)
    df['stage'] = df['stage'].str.upper()
    df['confidence'] = df['confidence'].str.upper()
    df.loc[df['currency'] == '', 'currency'] = 'USD'
    df['notes'] = df['notes'].apply(_clean_text)

    record_cols = [c for c in DEAL_FIELDS if c != 'activities']
    records = df[record_cols].to_dict('records')
    for row in records:
        row['notes'] = row['notes'] or None
    deals = [Deal(**row) for row in records]

    logger.info(f"Transformed {len(deals)} deals")
    logger.info(f"Stages: {df['stage'].value_counts().to_dict()}")
    return deals


def load_deals(filepath: str) -> List[Deal]:
    """
    Load and transform a deal export.

    Supports both CSV (.csv) and Excel (.xlsx) file formats.

    Args:
        filepath: Path to the deal export

    Returns:
        list: Deal records
    """
    logger.info(f"Loading deals from: {filepath}")
    return transform_deal_export(_read_table(filepath))


def load_accounts(filepath: str) -> List[Account]:
    """Load an account export into Account records."""
    logger.info(f"Loading accounts from: {filepath}")

    df = _read_table(filepath).rename(columns=ACCOUNT_COLUMN_MAP)
    _check_columns(df, REQUIRED_ACCOUNT_COLUMNS)

    account_fields = [f.name for f in fields(Account)]
    for col in account_fields:
        if col not in df.columns:
            df[col] = None
        df[col] = df[col].apply(_clean_text)
    records = df[account_fields].to_dict('records')
    for row in records:
        row['avatar'] = row['avatar'] or None
    accounts = [Account(**row) for row in records]
    logger.info(f"Loaded {len(accounts)} accounts")
    return accounts


def load_history(filepath: str) -> List[HistoricalRevenue]:
    """
    Load historical monthly revenue.

    Args:
        filepath: Path to the history export (month, forecasted, actual)

    Returns:
        list: HistoricalRevenue records sorted by month
    """
    logger.info(f"Loading historical revenue from: {filepath}")

    df = _read_table(filepath)
    _check_columns(df, REQUIRED_HISTORY_COLUMNS)

    df['month'] = df['month'].apply(_clean_month)
    for col in ['forecasted', 'actual']:
        df[col] = pd.to_numeric(df[col], errors='coerce').fillna(0).astype(float)

    df = df.sort_values('month', kind='mergesort').reset_index(drop=True)
    history = [HistoricalRevenue(**row) for row in df[REQUIRED_HISTORY_COLUMNS].to_dict('records')]

    if history:
        logger.info(f"Loaded {len(history)} months: {history[0].month} to {history[-1].month}")
    return history


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

@dataclass(frozen=True)
class StoreSnapshot:
    """Point-in-time copy of the store contents."""
    deals: Tuple[Deal, ...]
    accounts: Tuple[Account, ...]
    history: Tuple[HistoricalRevenue, ...]


class DealStore:
    """
    In-memory deal, account and history store.

    Deals are frozen records; updates replace the stored record, so snapshots
    taken earlier are unaffected.
    """

    def __init__(self, deals: Iterable[Deal] = (), accounts: Iterable[Account] = (),
                 history: Iterable[HistoricalRevenue] = ()):
        self._deals: "OrderedDict[str, Deal]" = OrderedDict((d.id, d) for d in deals)
        self._accounts: "OrderedDict[str, Account]" = OrderedDict((a.id, a) for a in accounts)
        self._history: Tuple[HistoricalRevenue, ...] = tuple(history)

    @classmethod
    def from_files(cls, deals_path: str, accounts_path: Optional[str] = None,
                   history_path: Optional[str] = None) -> 'DealStore':
        """Build a store from CRM export files."""
        return cls(
            deals=load_deals(deals_path),
            accounts=load_accounts(accounts_path) if accounts_path else (),
            history=load_history(history_path) if history_path else (),
        )

    def __len__(self) -> int:
        return len(self._deals)

    def __contains__(self, deal_id: str) -> bool:
        return deal_id in self._deals

    # Deals

    def list(self) -> List[Deal]:
        return [d for d in self._deals.values()]

    def get(self, deal_id: str) -> Deal:
        """Get a deal by id. Raises KeyError for unknown ids."""
        return self._deals[deal_id]

    def upsert(self, deal: Deal) -> Deal:
        """Insert a new deal or replace the one with the same id."""
        if deal.id in self._deals:
            logger.debug(f"Replacing deal {deal.id}")
        self._deals[deal.id] = deal
        return deal

    def update(self, deal_id: str, updates: Dict[str, Any],
               now: Optional[str] = None) -> Optional[Deal]:
        """
        Apply a partial update to a deal and stamp `updated_at`.

        Args:
            deal_id: Deal to update
            updates: Field name -> new value
            now: Timestamp to stamp (defaults to the current UTC time)

        Returns:
            Deal: Updated deal, or None if the id is unknown

        Raises:
            ValueError: If updates change the id or name fields a Deal does not have
        """
        if deal_id not in self._deals:
            return None

        if 'id' in updates:
            raise ValueError("Deal id cannot be changed by update; upsert a new deal instead")
        unknown = sorted(set(updates) - set(DEAL_FIELDS))
        if unknown:
            raise ValueError(f"Unknown deal fields: {unknown}")

        changes = dict(updates)
        changes['updated_at'] = now or utc_now_iso()
        updated = replace(self._deals[deal_id], **changes)
        self._deals[deal_id] = updated
        return updated

    def add_activity(self, deal_id: str, activity_type: str, notes: str,
                     now: Optional[str] = None,
                     activity_id: Optional[str] = None) -> Optional[Deal]:
        """
        Log an activity against a deal.

        The newest activity goes first. Both the activity date and the deal's
        `updated_at` are stamped with `now`.

        Returns:
            Deal: Updated deal, or None if the id is unknown

        Raises:
            ValueError: If activity_type is not a known ActivityType
        """
        if deal_id not in self._deals:
            return None

        try:
            kind = ActivityType(activity_type)
        except ValueError:
            raise ValueError(
                f"Unknown activity type: {activity_type}. Valid types: {[t.value for t in ActivityType]}"
            ) from None

        stamp = now or utc_now_iso()
        activity = Activity(
            id=activity_id or f"act-{uuid.uuid4().hex[:12]}",
            type=kind.value,
            notes=notes,
            date=stamp,
        )
        deal = self._deals[deal_id]
        updated = replace(deal, activities=(activity,) + tuple(deal.activities), updated_at=stamp)
        self._deals[deal_id] = updated
        return updated

    # Accounts and history

    def accounts(self) -> List[Account]:
        return [a for a in self._accounts.values()]

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    def account_deals(self, account_id: str) -> List[Deal]:
        return [d for d in self._deals.values() if d.account_id == account_id]

    def history(self) -> List[HistoricalRevenue]:
        return [h for h in self._history]

    def snapshot(self) -> StoreSnapshot:
        """Immutable copy of the current contents for one engine call."""
        return StoreSnapshot(
            deals=tuple(self._deals.values()),
            accounts=tuple(self._accounts.values()),
            history=self._history,
        )


if __name__ == '__main__':
    import sys

    # Default path
    filepath = 'deals.csv'
    if len(sys.argv) > 1:
        filepath = sys.argv[1]

    store = DealStore(deals=load_deals(filepath))

    print(f"\nLoaded {len(store)} deals")
    for deal in store.list()[:20]:
        print(f"  {deal.id:<20} {deal.stage:<12} {deal.amount:>14,.2f}  {deal.close_date}")
