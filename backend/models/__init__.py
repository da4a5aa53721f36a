"""SQLAlchemy ORM models."""

from .account import Account
from .balance_snapshot import BalanceSnapshot
from .connection import Connection
from .download_log import DownloadLog
from .emergency_fund_account import EmergencyFundAccount
from .transaction import Transaction
from .upstream_call_log import UpstreamCallLog
from .utils import generate_uuid

__all__ = ["Account", "BalanceSnapshot", "Connection", "DownloadLog", "EmergencyFundAccount", "Transaction", "UpstreamCallLog", "generate_uuid"]
