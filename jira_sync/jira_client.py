"""
Jira REST API Client Module
Handles all communication with the Jira Cloud REST API v3.
"""

import threading
from typing import Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from jira_sync.config_manager import ConfigManager
from jira_sync.utils.logger import get_logger
from jira_sync.utils.retry import HTTP_RETRY, RetryConfig, build_retrying

logger = get_logger(__name__)

PROJECT_SEARCH_PATH = '/rest/api/3/project/search'
ISSUE_SEARCH_PATH = '/rest/api/3/issue/search'
MYSELF_PATH = '/rest/api/3/myself'

PROJECT_PAGE_SIZE = 50
ISSUE_PAGE_SIZE = 100

DEFAULT_ISSUE_FIELDS = [
    'summary',
    'status',
    'priority',
    'issuetype',
    'assignee',
    'duedate',
    'updated',
    'project',
]

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class JiraAPIError(Exception):
    """Terminal error from the Jira API."""

    def __init__(
        self,
        message: str,
        status_code: int = None,
        response: dict = None,
        start_at: int = None,
        retryable: bool = False,
        retry_after: float = None
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        self.start_at = start_at
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(self.message)


class JiraTransportError(JiraAPIError):
    """Network-level failure (connection refused, reset, timeout, DNS) after retries."""

    def __init__(self, message: str, start_at: int = None):
        super().__init__(message, start_at=start_at, retryable=True)


class JiraClient:
    """
    Jira REST API client with pagination, retry/backoff and rate-limit handling.

    Every request is attempted up to ``retry_config.max_attempts`` times.
    Statuses 429/500/502/503/504 and transport errors are retried with
    exponential backoff; a numeric ``Retry-After`` on 429 overrides the
    backoff (capped at ``max_delay``). Any other non-2xx is terminal.
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: float = 30,
        retry_config: RetryConfig = HTTP_RETRY,
        cancel_event: Optional[threading.Event] = None,
        sleep_fn: Callable[[float], None] = None,
        session: requests.Session = None,
        pool_size: int = 10
    ):
        """
        Initialize Jira client.

        Args:
            base_url: Jira Cloud base URL, e.g. https://your-org.atlassian.net
            email: Account email for Basic authentication
            api_token: API token for Basic authentication
            timeout: Per-request timeout in seconds
            retry_config: Backoff policy for transient failures
            cancel_event: Cancellation signal observed during backoff waits
            sleep_fn: Replacement for the backoff wait (tests)
            session: Pre-built requests session (tests)
            pool_size: HTTP connection pool size; match the fan-out worker count
        """
        self.base_url = base_url.rstrip('/')
        self.email = email
        self.api_token = api_token
        self.timeout = timeout
        self.retry_config = retry_config
        self.cancel_event = cancel_event
        self._sleep_fn = sleep_fn
        self._session = session or self._create_session(pool_size)

        logger.info(f"Jira client initialized for {self.base_url}")

    @classmethod
    def from_config(
        cls,
        config: ConfigManager = None,
        cancel_event: Optional[threading.Event] = None
    ) -> 'JiraClient':
        """Build a client from configuration (JIRA_* environment variables)."""
        config = config or ConfigManager()
        credentials = config.get_jira_credentials()
        jira_config = config.get_jira_config()

        retry_config = RetryConfig(
            max_attempts=int(jira_config.get('max_attempts', HTTP_RETRY.max_attempts)),
            initial_delay=float(jira_config.get('initial_backoff', HTTP_RETRY.initial_delay)),
            max_delay=float(jira_config.get('max_backoff', HTTP_RETRY.max_delay)),
            multiplier=float(jira_config.get('backoff_factor', HTTP_RETRY.multiplier))
        )

        return cls(
            base_url=credentials.base_url,
            email=credentials.email,
            api_token=credentials.api_token,
            timeout=float(jira_config.get('timeout', 30)),
            retry_config=retry_config,
            cancel_event=cancel_event,
            pool_size=max(10, config.get_worker_count())
        )

    def _create_session(self, pool_size: int) -> requests.Session:
        """Create requests session with Basic auth and default headers."""
        session = requests.Session()

        session.auth = (self.email, self.api_token)
        session.headers.update({
            'Accept': 'application/json'
        })

        # Retries are handled by tenacity in _make_request so Retry-After can be capped
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
        session.mount('https://', adapter)
        session.mount('http://', adapter)

        return session

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        """Read a numeric Retry-After header from a 429 response."""
        if response.status_code != 429:
            return None
        value = response.headers.get('Retry-After')
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    def _send(self, method: str, url: str, params: Dict, json_data: Dict, headers: Dict) -> requests.Response:
        """One attempt; transient failures are raised as retryable errors."""
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=headers,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise JiraTransportError(f"Request to {url} failed: {e}")

        if response.status_code in RETRYABLE_STATUSES:
            raise JiraAPIError(
                f"HTTP {response.status_code} from {url}",
                response.status_code,
                retryable=True,
                retry_after=self._retry_after(response)
            )
        return response

    def _make_request(
        self,
        method: str,
        path: str,
        params: Dict = None,
        json_data: Dict = None
    ) -> Dict:
        """
        Make HTTP request to Jira API with retry.

        Args:
            method: HTTP method
            path: API path starting with /rest/
            params: Query parameters
            json_data: JSON body data

        Returns:
            Response JSON

        Raises:
            JiraAPIError: If the request fails terminally or retries are exhausted
            OperationCancelled: If cancelled during a backoff wait
        """
        url = f"{self.base_url}{path}"
        headers = {'Content-Type': 'application/json'} if json_data is not None else None
        retrying = build_retrying(f"{method} {path}", self.retry_config, self.cancel_event, self._sleep_fn)

        try:
            response = retrying(self._send, method, url, params, json_data, headers)
        except JiraAPIError as e:
            if not e.retryable:
                raise
            attempts = max(1, self.retry_config.max_attempts)
            message = f"Jira API request failed after {attempts} attempts: {e.message}"
            if isinstance(e, JiraTransportError):
                raise JiraTransportError(message) from e
            raise JiraAPIError(message, e.status_code, retryable=True) from e

        return self._handle_response(response, path)

    def _handle_response(self, response: requests.Response, path: str) -> Dict:
        """Turn a non-retryable response into data or a terminal error."""
        status = response.status_code

        if status == 401:
            raise JiraAPIError("Authentication failed. Check your credentials.", 401)
        elif status == 403:
            raise JiraAPIError("Access forbidden. Check permissions.", 403)
        elif status == 404:
            raise JiraAPIError(f"Resource not found: {path}", 404)
        elif status < 200 or status >= 300:
            raise JiraAPIError(f"Jira API error: HTTP {status}: {response.text}", status)

        if not response.text:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise JiraAPIError(f"Malformed response from {path}: {e}", status)

        if not isinstance(data, dict):
            raise JiraAPIError(f"Unexpected response shape from {path}", status)
        return data

    # ========================================
    # Project Methods
    # ========================================

    def fetch_projects(self) -> List[Dict]:
        """
        Fetch all accessible projects (with lead expanded), page by page.

        Raises:
            JiraAPIError: Naming the startAt of the failing page
        """
        logger.info("Fetching all projects")
        projects: List[Dict] = []
        start_at = 0

        while True:
            params = {
                'startAt': start_at,
                'maxResults': PROJECT_PAGE_SIZE,
                'expand': 'lead'
            }
            try:
                response = self._make_request('GET', PROJECT_SEARCH_PATH, params=params)
            except JiraAPIError as e:
                raise _page_error('get projects', start_at, e) from e

            values = response.get('values') or []
            projects.extend(values)

            if response.get('isLast') or not values:
                break
            start_at += len(values)
            logger.debug(f"Fetched {start_at} projects so far")

        logger.info(f"Fetched {len(projects)} projects")
        return projects

    # ========================================
    # Issue Methods
    # ========================================

    def search_issues(self, jql: str, fields: List[str] = None) -> List[Dict]:
        """
        Fetch every issue matching a JQL query.

        Args:
            jql: JQL query string
            fields: Fields to include (defaults to DEFAULT_ISSUE_FIELDS)

        Returns:
            Issues in the order returned by Jira

        Raises:
            JiraAPIError: Naming the startAt of the failing page
        """
        fields = list(fields) if fields else list(DEFAULT_ISSUE_FIELDS)
        jql = jql.replace('\n', ' ').strip()

        issues: List[Dict] = []
        start_at = 0

        while True:
            body = {
                'jql': jql,
                'startAt': start_at,
                'maxResults': ISSUE_PAGE_SIZE,
                'fields': fields
            }
            try:
                response = self._make_request('POST', ISSUE_SEARCH_PATH, json_data=body)
            except JiraAPIError as e:
                raise _page_error('search issues', start_at, e) from e

            page = response.get('issues') or []
            issues.extend(page)

            total = response.get('total') or 0
            if not page or start_at + len(page) >= total:
                break
            start_at += len(page)
            logger.debug(f"Fetched {start_at}/{total} issues for JQL: {jql[:100]}")

        return issues

    def fetch_issues_for_project(self, project_key: str) -> List[Dict]:
        """Fetch all issues of one project, oldest update first."""
        jql = f'project = "{project_key}" ORDER BY updated ASC'
        return self.search_issues(jql)

    def fetch_issues_updated_since(self, since: str) -> List[Dict]:
        """
        Fetch issues updated at or after a naive timestamp.

        Args:
            since: "YYYY/MM/DD HH:MM", interpreted by Jira in the instance timezone
        """
        return self.search_issues(build_delta_jql(since))

    # ========================================
    # Utility Methods
    # ========================================

    def test_connection(self) -> bool:
        """Test connection to Jira API."""
        try:
            self._make_request('GET', MYSELF_PATH)
            logger.info("Jira connection test successful")
            return True
        except JiraAPIError as e:
            logger.error(f"Jira connection test failed: {e.message}")
            return False

    def close(self) -> None:
        """Release pooled HTTP connections."""
        self._session.close()


def build_delta_jql(since: str) -> str:
    """JQL selecting issues updated at or after since, oldest first."""
    return f'updated >= "{since}" ORDER BY updated ASC'


def _page_error(operation: str, start_at: int, cause: JiraAPIError) -> JiraAPIError:
    """Wrap a request failure with the page offset that produced it."""
    message = f"{operation} (startAt={start_at}): {cause.message}"
    if isinstance(cause, JiraTransportError):
        return JiraTransportError(message, start_at=start_at)
    return JiraAPIError(
        message,
        cause.status_code,
        cause.response,
        start_at=start_at,
        retryable=cause.retryable
    )
