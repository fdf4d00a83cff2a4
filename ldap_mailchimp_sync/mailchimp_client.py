"""
Mailchimp Marketing API (v3) client.

This module implements the destination side of the sync: listing audiences
and creating or updating subscribers. Requests go over ``http.client`` with
Basic authentication built from the API key; the datacenter is taken from the
key's ``-<dc>`` suffix.
"""

import json
import base64
import hashlib
import logging
import threading
from typing import Dict, List, Any, Optional
from urllib.parse import urlencode
from http.client import HTTPSConnection, HTTPException

from ldap_mailchimp_sync.errors import DestinationUnavailable
from ldap_mailchimp_sync.models import MailingList, UpsertOptions

logger = logging.getLogger(__name__)

API_VERSION_PATH = '/3.0'
MAX_LIST_COUNT = 1000


def subscriber_hash(email: str) -> str:
    """MD5 of the lowercased address, as Mailchimp keys list members."""
    return hashlib.md5(email.lower().encode('utf-8')).hexdigest()


class MailchimpClient:
    """
    Client for the Mailchimp Marketing API.

    One HTTPS connection is kept per thread, so a single client can be shared
    by the pipeline's worker pool.
    """

    def __init__(self, api_key: str, timeout: int = 30):
        """
        Initialize the Mailchimp client.

        Args:
            api_key: Mailchimp API key in the form ``<key>-<datacenter>``
            timeout: Socket timeout in seconds for each request
        """
        if not api_key or '-' not in api_key:
            raise DestinationUnavailable("Mailchimp API key must end with its datacenter, e.g. '<key>-us6'")

        self.datacenter = api_key.rsplit('-', 1)[1]
        self.host = f"{self.datacenter}.api.mailchimp.com"
        self.timeout = timeout

        credentials = base64.b64encode(f"anystring:{api_key}".encode()).decode()
        self.auth_headers = {'Authorization': f"Basic {credentials}"}

        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        logger.info(f"Initialized Mailchimp client for datacenter {self.datacenter}")

    def _get_connection(self) -> HTTPSConnection:
        """Get or create this thread's HTTPS connection."""
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = HTTPSConnection(self.host, timeout=self.timeout)
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return connection

    def _drop_connection(self):
        connection = getattr(self._local, 'connection', None)
        if connection is not None:
            connection.close()
            self._local.connection = None

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to the Mailchimp API.

        Args:
            method: HTTP method (GET, POST, PUT)
            path: Endpoint path below /3.0
            body: JSON request body
            params: Query string parameters

        Returns:
            Parsed JSON response

        Raises:
            DestinationUnavailable: If the request fails or the API returns an error
        """
        full_path = API_VERSION_PATH + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode(params)

        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            self._drop_connection()
            raise DestinationUnavailable(f"Connection error to Mailchimp: {e}") from e

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status >= 400:
            raise DestinationUnavailable(
                f"HTTP {response.status}: {self._error_detail(response_data, response.reason)}",
                status_code=response.status
            )

        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise DestinationUnavailable(f"Invalid JSON response from Mailchimp: {e}") from e

    def _error_detail(self, response_data: str, reason: str) -> str:
        """Pull title and detail out of a Mailchimp problem document."""
        try:
            problem = json.loads(response_data)
        except (json.JSONDecodeError, TypeError):
            return reason
        if not isinstance(problem, dict):
            return reason
        title = problem.get('title', reason)
        detail = problem.get('detail')
        return f"{title}: {detail}" if detail else title

    def ping(self) -> bool:
        """Check that the API key is accepted."""
        response = self.request('GET', '/ping')
        return response.get('health_status') == "Everything's Chimpy!"

    def list_all_lists(self) -> List[MailingList]:
        """
        Return every audience on the account in a single call.

        Raises:
            DestinationUnavailable: If the API call fails
        """
        response = self.request('GET', '/lists', params={
            'count': MAX_LIST_COUNT,
            'fields': 'lists.id,lists.name',
        })
        lists = [MailingList(id=item['id'], name=item['name']) for item in response.get('lists', [])]
        logger.debug(f"Mailchimp account has {len(lists)} lists")
        return lists

    def upsert_subscriber(self, list_id: str, email: str, merge_fields: Dict[str, str],
                          options: UpsertOptions = UpsertOptions()) -> Dict[str, Any]:
        """
        Create or update a subscriber on a list.

        With ``update_existing`` the member is written with PUT on its subscriber
        hash, so repeated runs converge on one member per address. Without it a
        POST is issued and an existing member is an error.

        Raises:
            DestinationUnavailable: If the API call fails
        """
        data = {
            'email_address': email,
            'merge_fields': merge_fields,
        }
        new_status = 'pending' if options.double_optin else 'subscribed'

        if options.send_welcome:
            # v3 has no per-request switch; welcome emails follow the audience's automations
            logger.warning("send_welcome is controlled by the audience settings in Mailchimp v3")

        if options.update_existing:
            data['status_if_new'] = new_status
            response = self.request('PUT', f"/lists/{list_id}/members/{subscriber_hash(email)}", body=data)
        else:
            data['status'] = new_status
            response = self.request('POST', f"/lists/{list_id}/members", body=data)

        logger.debug(f"Upserted {email} into list {list_id}")
        return response

    def close(self):
        """Close every connection opened by this client."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                connection.close()
            except OSError as e:
                logger.warning(f"Error closing Mailchimp connection: {e}")
        self._local = threading.local()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
