"""
GitLab API client for merge request synchronization.

This module provides a client for interacting with the GitLab REST API (v4)
to fetch groups, projects, merge requests, notes and approval events.
"""

import logging
import requests
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any


DEFAULT_API_URL = "https://gitlab.com/api/v4"


class GitLabAPIError(Exception):
    """Custom exception for GitLab API related errors."""
    pass


class GitLabRateLimitError(GitLabAPIError):
    """Exception raised when GitLab API rate limit is exceeded."""
    pass


class GitLabAuthenticationError(GitLabAPIError):
    """Exception raised when GitLab API authentication fails."""
    pass


@dataclass
class PageResult:
    """One page of a paginated collection plus the provider's page metadata."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    total_pages: int = 0
    total_items: int = 0


def _header_int(headers: Any, name: str) -> int:
    """Read an integer pagination header, treating missing or garbage values as 0."""
    try:
        return int(headers.get(name) or 0)
    except (TypeError, ValueError):
        return 0


class GitLabClient:
    """
    Client for interacting with GitLab API to fetch merge request data.

    This client handles authentication, rate limiting and retries, and
    exposes one method per remote resource. Collection endpoints return a
    single page at a time together with GitLab's pagination headers; draining
    them is left to the pagination walker.
    """

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL,
                 timeout: float = 30.0, max_retries: int = 2, base_delay: float = 1.0):
        """
        Initialize GitLab client with authentication token.

        Args:
            token: GitLab personal access token for API authentication
            api_url: Base URL of the GitLab REST API
            timeout: Per-request timeout in seconds
            max_retries: Number of retries after a failed request
            base_delay: Base delay in seconds for exponential backoff

        Raises:
            GitLabAuthenticationError: If token is empty or None
        """
        if not token:
            raise GitLabAuthenticationError("GitLab token is required")

        self.token = token
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.session = requests.Session()
        self.session.headers.update({
            'PRIVATE-TOKEN': token,
            'Accept': 'application/json',
            'User-Agent': 'GitLab-MR-Analyzer/1.0'
        })

        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> 'GitLabClient':
        """Build a client from an AnalyzerConfig."""
        return cls(
            config.token,
            api_url=config.api_url,
            timeout=config.timeout,
            max_retries=config.max_retries
        )

    def validate_token(self) -> bool:
        """
        Test API connectivity and token validity.

        Returns:
            True if token is valid and API is accessible

        Raises:
            GitLabAuthenticationError: If authentication fails
            GitLabAPIError: If API request fails for other reasons
        """
        try:
            response = self.session.get(f"{self.api_url}/user", timeout=self.timeout)

            if response.status_code == 401:
                raise GitLabAuthenticationError("Invalid GitLab token")
            elif response.status_code == 429:
                raise GitLabRateLimitError("GitLab API rate limit exceeded")
            elif response.status_code != 200:
                raise GitLabAPIError(f"API request failed: {response.status_code}")

            self.logger.info("GitLab token validation successful")
            return True

        except requests.RequestException as e:
            raise GitLabAPIError(f"Failed to connect to GitLab API: {e}")

    def _get_rate_limit_info(self, response: requests.Response) -> Dict[str, Any]:
        """Extract rate limit information from response headers."""
        return {
            'remaining': _header_int(response.headers, 'RateLimit-Remaining'),
            'limit': _header_int(response.headers, 'RateLimit-Limit'),
            'reset': _header_int(response.headers, 'RateLimit-Reset'),
            'observed': _header_int(response.headers, 'RateLimit-Observed')
        }

    def _handle_rate_limit(self, response: requests.Response) -> None:
        """
        Raise on an exhausted rate limit budget and warn when it runs low.

        GitLab only sends RateLimit-* headers on instances with throttling
        enabled; without them nothing is logged.

        Raises:
            GitLabRateLimitError: If the request was throttled
        """
        if response.status_code == 429:
            rate_info = self._get_rate_limit_info(response)
            reset_time_str = (
                datetime.fromtimestamp(rate_info['reset']).strftime('%Y-%m-%d %H:%M:%S')
                if rate_info['reset'] else 'unknown'
            )
            raise GitLabRateLimitError(
                f"GitLab API rate limit exceeded. Rate limit resets at {reset_time_str}"
            )

        if 'RateLimit-Remaining' not in response.headers:
            return

        rate_info = self._get_rate_limit_info(response)
        self.logger.debug(f"API rate limit: {rate_info['remaining']}/{rate_info['limit']} remaining")
        if rate_info['remaining'] < 50:
            self.logger.warning(
                f"GitLab API rate limit running low: {rate_info['remaining']}/{rate_info['limit']} remaining"
            )

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """
        Make authenticated GET request with retry logic and exponential backoff.

        Args:
            url: API endpoint URL
            params: Query parameters for the request

        Returns:
            The successful HTTP response

        Raises:
            GitLabAPIError: If API request fails after all retries
            GitLabRateLimitError: If rate limit is exceeded
            GitLabAuthenticationError: If the token is rejected
        """
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)

                self._handle_rate_limit(response)

                if response.status_code == 401:
                    raise GitLabAuthenticationError("GitLab token is invalid or expired")
                elif response.status_code != 200:
                    raise GitLabAPIError(f"API request failed: {response.status_code} - {response.text}")

                if attempt > 0:
                    self.logger.info(f"API request succeeded after {attempt} retries")

                return response

            except GitLabRateLimitError:
                # Don't retry rate limit errors, let them bubble up
                raise
            except GitLabAuthenticationError:
                raise

            except (requests.RequestException, GitLabAPIError) as e:
                last_exception = e

                if attempt < self.max_retries:
                    delay = self.base_delay * (2 ** attempt)
                    self.logger.warning(
                        f"API request to {url} failed (attempt {attempt + 1}/{self.max_retries + 1}): {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    time.sleep(delay)
                else:
                    self.logger.error(f"API request to {url} failed after {self.max_retries + 1} attempts: {e}")

        raise GitLabAPIError(f"GitLab API request to {url} failed after {self.max_retries + 1} attempts: {last_exception}")

    def _make_api_request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make an API request and return the decoded JSON body."""
        response = self._request(url, params)
        try:
            return response.json()
        except ValueError as e:
            raise GitLabAPIError(f"Invalid JSON in response from {url}: {e}")

    def _get_page(self, url: str, params: Dict[str, Any]) -> PageResult:
        """Fetch one page of a collection and read GitLab's pagination headers."""
        response = self._request(url, params)
        try:
            items = response.json()
        except ValueError as e:
            raise GitLabAPIError(f"Invalid JSON in response from {url}: {e}")

        if not isinstance(items, list):
            raise GitLabAPIError(f"Expected a list from {url}, got {type(items).__name__}")

        return PageResult(
            items=items,
            total_pages=_header_int(response.headers, 'X-Total-Pages'),
            total_items=_header_int(response.headers, 'X-Total')
        )

    def list_groups(self, search: str, page: int = 1, per_page: int = 100) -> PageResult:
        """
        Fetch one page of the groups visible to the token that match ``search``.

        Args:
            search: Search term matched against group name and path
            page: 1-based page index
            per_page: Page size

        Returns:
            PageResult of group dictionaries (id, name, path, ...)
        """
        result = self._get_page(
            f"{self.api_url}/groups",
            {'search': search, 'per_page': per_page, 'page': page}
        )
        self.logger.debug(f"Found {len(result.items)} groups matching '{search}' on page {page}")
        return result

    def find_group_id(self, group_name: str, per_page: int = 100) -> Optional[int]:
        """
        Resolve a group name or path to its numeric id.

        Search results are read page by page until an exact match turns up,
        since a broad term can match more groups than fit on one page.

        Returns:
            The group id, or None if no group matches exactly
        """
        page = 1
        while True:
            result = self.list_groups(group_name, page, per_page)
            for group in result.items:
                if group.get('name') == group_name or group.get('path') == group_name:
                    return group['id']

            if not result.items:
                return None
            if result.total_pages <= page and len(result.items) < per_page:
                return None
            page += 1

    def list_projects(self, group_id: int, page: int = 1, per_page: int = 100) -> PageResult:
        """Fetch one page of the projects belonging to a group."""
        url = f"{self.api_url}/groups/{group_id}/projects"
        return self._get_page(url, {'per_page': per_page, 'page': page})

    def get_project(self, project_id: int) -> Dict[str, Any]:
        """
        Fetch a single project.

        Raises:
            GitLabAPIError: If the project is not accessible
        """
        try:
            return self._make_api_request(f"{self.api_url}/projects/{project_id}")
        except GitLabAPIError as e:
            if "404" in str(e):
                raise GitLabAPIError(f"Project {project_id} not found or not accessible")
            raise

    def list_merge_requests(self, project_id: int, page: int = 1, per_page: int = 100,
                            state: str = "all") -> PageResult:
        """
        Fetch one page of merge requests for a project.

        Args:
            project_id: Numeric project id
            page: 1-based page index
            per_page: Page size requested from GitLab
            state: MR state filter (opened, closed, merged, all). Defaults to 'all'

        Returns:
            PageResult with the MRs and GitLab's X-Total-Pages/X-Total values
        """
        url = f"{self.api_url}/projects/{project_id}/merge_requests"
        result = self._get_page(url, {'state': state, 'per_page': per_page, 'page': page})
        self.logger.debug(
            f"Page {page} of {result.total_pages} for project {project_id}: "
            f"{len(result.items)} MRs (total items: {result.total_items})"
        )
        return result

    def list_notes(self, project_id: int, mr_iid: int, page: int = 1, per_page: int = 100) -> PageResult:
        """Fetch one page of notes (comments) on a merge request."""
        url = f"{self.api_url}/projects/{project_id}/merge_requests/{mr_iid}/notes"
        return self._get_page(url, {'per_page': per_page, 'page': page})

    def list_approval_events(self, project_id: int, mr_iid: int) -> List[Dict[str, Any]]:
        """
        Fetch approval events for a merge request.

        The resource_approval_events endpoint carries the actual approval
        timestamps. This is best effort: any failure yields an empty list.

        Returns:
            List of approval event dictionaries, empty on failure
        """
        url = f"{self.api_url}/projects/{project_id}/merge_requests/{mr_iid}/resource_approval_events"

        try:
            events = self._make_api_request(url)
        except GitLabAPIError as e:
            self.logger.warning(f"Failed to fetch approval events for MR !{mr_iid}: {e}")
            return []

        if not isinstance(events, list):
            self.logger.warning(f"Unexpected approval events payload for MR !{mr_iid}, ignoring")
            return []

        return events
