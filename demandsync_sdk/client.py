"""
Demand store SDK client
Main API client for the shared demand record store
"""

import requests
from typing import Optional, Dict, List, Any, Tuple

from .exceptions import (
    StoreAPIError,
    StoreAuthenticationError,
    StoreConflictError,
    StoreDuplicateError,
    StoreNotFoundError,
    StoreUnavailableError,
)


class PresenceAPI:
    """Presence API endpoints"""

    def __init__(self, client: 'StoreClient'):
        self.client = client

    def heartbeat(self, identity: str, joined_at: Optional[str] = None) -> Dict[str, Any]:
        """Announce (or refresh) an identity as online

        Args:
            identity: Presence key, usually the operator name
            joined_at: ISO timestamp of the first announcement

        Returns:
            Member dictionary as stored by the server
        """
        data: Dict[str, Any] = {}
        if joined_at:
            data['joined_at'] = joined_at
        return self.client._request('PUT', f'/api/v1/presence/{identity}', json=data)

    def untrack(self, identity: str) -> None:
        """Remove an identity from the roster"""
        try:
            self.client._request('DELETE', f'/api/v1/presence/{identity}')
        except StoreNotFoundError:
            pass

    def list(self) -> List[Dict[str, Any]]:
        """List current members (server evicts expired heartbeats)"""
        response = self.client._request('GET', '/api/v1/presence')
        if isinstance(response, dict) and 'members' in response:
            return response['members']
        return response if isinstance(response, list) else []


class StoreClient:
    """
    Main store client

    Usage:
        client = StoreClient(
            server_url='https://demands.example.internal',
            api_key='your-api-key'
        )

        # List demands
        rows = client.fetch_all('demands')
    """

    def __init__(
        self,
        server_url: str,
        api_key: Optional[str] = None,
        timeout: int = 30,
    ):
        self.server_url = server_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

        if api_key:
            self.session.headers['Authorization'] = f'Bearer {api_key}'

        self.presence = PresenceAPI(self)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None
    ) -> Any:
        """Make HTTP request to API"""
        url = f'{self.server_url}{path}'

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                timeout=self.timeout
            )
        except requests.Timeout:
            raise StoreUnavailableError(f'Request to {url} timed out after {self.timeout}s')
        except requests.ConnectionError as e:
            raise StoreUnavailableError(f'Could not reach {url}: {e}')

        if response.status_code >= 400:
            raise _error_for(response, url)

        if response.status_code == 204:
            return None

        try:
            return response.json()
        except ValueError:
            return response.text

    def fetch_all(self, collection: str) -> List[Dict[str, Any]]:
        """Fetch every row of a collection"""
        response = self._request('GET', f'/api/v1/{collection}')
        if isinstance(response, dict) and collection in response:
            return response[collection]
        return response if isinstance(response, list) else []

    def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row

        Args:
            collection: Collection name (e.g. 'time_entries')
            row: Row body; 'id' is optional and server-assigned when missing

        Returns:
            Stored row including 'id' and 'revision'

        Raises:
            StoreDuplicateError: A row with the same id already exists
        """
        return self._request('POST', f'/api/v1/{collection}', json=row)

    def update(
        self,
        collection: str,
        row_id: str,
        patch: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Patch a row

        Args:
            collection: Collection name
            row_id: Row id
            patch: Fields to write
            expected: Optional field values the row must still hold for the
                      write to apply (compare-and-set)

        Returns:
            Updated row

        Raises:
            StoreConflictError: expected values no longer match
            StoreNotFoundError: no such row
        """
        data: Dict[str, Any] = {'patch': patch}
        if expected is not None:
            data['expected'] = expected
        return self._request('PATCH', f'/api/v1/{collection}/{row_id}', json=data)

    def delete(self, collection: str, row_id: str) -> None:
        """Delete a row"""
        self._request('DELETE', f'/api/v1/{collection}/{row_id}')

    def changes_since(self, cursor: int) -> Tuple[int, List[Dict[str, Any]]]:
        """Get the change log after a cursor

        Returns:
            (new_cursor, changes) where each change has collection, op, id,
            revision and optionally row
        """
        response = self._request('GET', '/api/v1/changes', params={'since': cursor})
        if not isinstance(response, dict):
            return cursor, []
        return int(response.get('cursor', cursor)), response.get('changes', [])

    def latest_revision(self) -> int:
        """Get the newest change log cursor without reading the log"""
        response = self._request('GET', '/api/v1/changes/latest')
        if not isinstance(response, dict):
            return 0
        return int(response.get('cursor', 0))

    def server_now(self) -> str:
        """Get the server clock as an ISO timestamp"""
        response = self._request('GET', '/api/v1/time')
        return response['now']

    def health(self) -> Dict[str, Any]:
        """Get server health status"""
        return self._request('GET', '/api/health')

    def close(self):
        """Close the session"""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _error_for(response: requests.Response, url: str) -> StoreAPIError:
    """Translate an HTTP error response into a typed SDK exception"""
    try:
        body = response.json()
    except ValueError:
        body = {}
    detail = body.get('error') if isinstance(body, dict) else None
    message = f'{response.status_code} from {url}' + (f': {detail}' if detail else '')

    if response.status_code == 401:
        return StoreAuthenticationError(message)
    if response.status_code == 404:
        return StoreNotFoundError(message)
    if response.status_code == 409:
        if detail == 'duplicate':
            return StoreDuplicateError(message)
        return StoreConflictError(message)
    return StoreAPIError(message, status_code=response.status_code)
