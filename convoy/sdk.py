"""
HTTP work-item store client
Talks to a remote store server exposing the same operations as store.Store
"""

import requests
from typing import Optional, Dict, List, Any

from .exceptions import StoreError, StoreUnavailableError
from .models import Dependency, Event, WorkItem


class StoreClient:
    """
    Remote work-item store

    Usage:
        store = StoreClient(
            server_url='https://beads.example.internal',
            name='gastown',
            api_key='your-api-key'
        )

        item = store.get_item('gt-abc')
        events = store.events_since(120)
    """

    def __init__(
        self,
        server_url: str,
        name: str = 'hq',
        api_key: Optional[str] = None,
        timeout: float = 30,
    ):
        self.server_url = server_url.rstrip('/')
        self.name = name
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

        if api_key:
            self.session.headers['Authorization'] = f'Bearer {api_key}'

    def __repr__(self) -> str:
        return f'StoreClient(name={self.name!r}, url={self.server_url!r})'

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
        except requests.Timeout as e:
            raise StoreUnavailableError(f'store {self.name}: request to {url} timed out after {self.timeout}s') from e
        except requests.ConnectionError as e:
            raise StoreUnavailableError(f'store {self.name}: cannot reach {url}: {e}') from e

        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            raise StoreUnavailableError(f'store {self.name}: {method} {path} -> {response.status_code}')
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise StoreError(f'store {self.name}: {method} {path} failed: {e}') from e

        if response.status_code == 204:
            return None

        try:
            return response.json()
        except ValueError:
            return response.text

    def close(self) -> None:
        """Close the underlying HTTP session"""
        self.session.close()

    # Items

    def create_item(
        self,
        item_id: str,
        title: str = '',
        type: str = 'task',
        status: str = 'open',
        assignee: str = '',
        description: str = '',
    ) -> WorkItem:
        """Create a work item"""
        data = {
            'id': item_id,
            'title': title,
            'type': type,
            'status': status,
            'assignee': assignee,
            'description': description,
        }
        return WorkItem.from_dict(self._request('POST', '/api/v1/items', json=data))

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        """Get a single item by ID"""
        data = self._request('GET', f'/api/v1/items/{item_id}')
        return WorkItem.from_dict(data) if data else None

    def update_item(self, item_id: str, **fields) -> Optional[WorkItem]:
        """Update fields on an item"""
        data = self._request('PATCH', f'/api/v1/items/{item_id}', json=fields)
        return WorkItem.from_dict(data) if data else None

    def close_item(self, item_id: str, reason: str = '') -> Optional[WorkItem]:
        """Close an item"""
        data = self._request('POST', f'/api/v1/items/{item_id}/close', json={'reason': reason})
        return WorkItem.from_dict(data) if data else None

    def list_items(self, type: Optional[str] = None, statuses: Optional[List[str]] = None) -> List[WorkItem]:
        """List items with optional filters"""
        params: Dict[str, Any] = {}
        if type is not None:
            params['type'] = type
        if statuses:
            params['status'] = ','.join(statuses)
        response = self._request('GET', '/api/v1/items', params=params)
        if isinstance(response, dict) and 'items' in response:
            response = response['items']
        return [WorkItem.from_dict(i) for i in response or []]

    def list_children(self, parent_id: str) -> List[WorkItem]:
        """List parent-child children of an item"""
        response = self._request('GET', f'/api/v1/items/{parent_id}/children')
        return [WorkItem.from_dict(i) for i in response or []]

    # Dependencies

    def add_dependency(self, item_id: str, depends_on_id: str, dep_type: str) -> bool:
        """Add a typed edge"""
        response = self._request(
            'POST',
            f'/api/v1/items/{item_id}/dependencies',
            json={'depends_on_id': depends_on_id, 'type': dep_type},
        )
        return bool((response or {}).get('added', True))

    def remove_dependency(self, item_id: str, depends_on_id: str, dep_type: str) -> bool:
        """Remove a typed edge"""
        response = self._request(
            'DELETE',
            f'/api/v1/items/{item_id}/dependencies',
            params={'depends_on_id': depends_on_id, 'type': dep_type},
        )
        return bool((response or {}).get('removed', True))

    def list_dependencies(
        self,
        item_id: str,
        direction: str = 'down',
        dep_type: Optional[str] = None,
    ) -> List[Dependency]:
        """List edges touching an item"""
        params: Dict[str, Any] = {'direction': direction}
        if dep_type is not None:
            params['type'] = dep_type
        response = self._request('GET', f'/api/v1/items/{item_id}/dependencies', params=params)
        return [Dependency.from_dict(d) for d in response or []]

    def dependencies_with_status(self, item_id: str) -> List[tuple]:
        """List outgoing edges with the target's current status"""
        response = self._request(
            'GET',
            f'/api/v1/items/{item_id}/dependencies',
            params={'direction': 'down', 'with_status': 'true'},
        )
        if response is None:
            raise StoreError(f'store {self.name}: item {item_id} not found')
        return [(Dependency.from_dict(d), d.get('target_status')) for d in response]

    # Events

    def events_since(self, ordinal: int) -> List[Event]:
        """Get all events after the given ordinal"""
        response = self._request('GET', '/api/v1/events', params={'since': ordinal})
        if isinstance(response, dict) and 'events' in response:
            response = response['events']
        return [Event.from_dict(e) for e in response or []]
