"""
Derived-data pipeline for inventory and pricing tables.

Spreadsheet rows plus supplier feeds plus global user edits become
filtered, sorted, paginated views:
- normalizer: identifier normalization with a bounded cache
- finance: total cost and markup derivation
- ingestion: sheet rows to items
- feeds: CRM / marketplace feed parsing, caching and reconciliation
- overrides: global edits with fan-out to every loaded copy
- views: deduplicated cross-table views
- filters, sorting, pagination: the view composer
- workspace: facade owning all state
- persistence: document storage and debounced saving
"""

# Import in dependency order
from pricedesk.exceptions import (
    PriceDeskError,
    IngestionError,
    TableNotFoundError,
    FeedError,
    FeedConnectionError,
    FeedParseError,
    PersistenceError,
    ValidationError,
)

from pricedesk.normalizer import IdentifierNormalizer, normalize_id

from pricedesk.finance import Financials, derive_financials, normalize_commission

from pricedesk.models import (
    CategoryType,
    FeedKind,
    FilterSpec,
    Item,
    SortState,
    Table,
    ViewKind,
)

from pricedesk.workspace import Workspace

from pricedesk.persistence import (
    AppSnapshot,
    DebouncedSaver,
    HttpStorage,
    JsonFileStorage,
)

from pricedesk.config import config

__version__ = config.version

__all__ = [
    # Exceptions
    "PriceDeskError",
    "IngestionError",
    "TableNotFoundError",
    "FeedError",
    "FeedConnectionError",
    "FeedParseError",
    "PersistenceError",
    "ValidationError",
    # Derivation
    "IdentifierNormalizer",
    "normalize_id",
    "Financials",
    "derive_financials",
    "normalize_commission",
    # Models
    "CategoryType",
    "FeedKind",
    "FilterSpec",
    "Item",
    "SortState",
    "Table",
    "ViewKind",
    # Facade and storage
    "Workspace",
    "AppSnapshot",
    "DebouncedSaver",
    "HttpStorage",
    "JsonFileStorage",
    # Config
    "config",
]
