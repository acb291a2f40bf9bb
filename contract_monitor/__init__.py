from .aggregate import aggregate, merge_counts
from .config import AppConfig, load_config
from .engine import ContractMonitor
from .models import AddressCounters, Cursor, Transaction

__all__ = [
    "AddressCounters",
    "AppConfig",
    "ContractMonitor",
    "Cursor",
    "Transaction",
    "aggregate",
    "load_config",
    "merge_counts",
]

__version__ = "0.1.0"
