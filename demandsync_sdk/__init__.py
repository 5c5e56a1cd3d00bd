"""
Demand store SDK for Python

Talk to the shared demand record store over HTTP.

Example:
    >>> from demandsync_sdk import StoreClient
    >>>
    >>> client = StoreClient(
    ...     server_url='https://demands.example.internal',
    ...     api_key='your-api-key'
    ... )
    >>>
    >>> # Fetch every demand row
    >>> rows = client.fetch_all('demands')
    >>>
    >>> # Patch one row, only if its timer is still the one we started
    >>> client.update('demands', 'DEM-001', {'timer_running': False},
    ...               expected={'timer_started_at': '2025-10-10T09:00:00+00:00'})
    >>>
    >>> # Poll for changes
    >>> cursor, changes = client.changes_since(0)
"""

from .client import StoreClient
from .exceptions import (
    StoreError,
    StoreAPIError,
    StoreNotFoundError,
    StoreAuthenticationError,
    StoreConflictError,
    StoreDuplicateError,
    StoreUnavailableError,
)

__version__ = "1.0.0"
__all__ = [
    "StoreClient",
    "StoreError",
    "StoreAPIError",
    "StoreNotFoundError",
    "StoreAuthenticationError",
    "StoreConflictError",
    "StoreDuplicateError",
    "StoreUnavailableError",
]
