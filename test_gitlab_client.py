"""
Unit tests for GitLab API client.

This module contains tests for the GitLabClient class, including
authentication, retries, rate limiting and pagination header handling.
"""

import pytest
from unittest.mock import Mock, patch
import requests

from gitlab_client import (
    GitLabClient,
    GitLabAPIError,
    GitLabRateLimitError,
    GitLabAuthenticationError,
    PageResult
)
from config import AnalyzerConfig


def make_response(status_code=200, json_data=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = json_data
    response.text = ''
    return response


class TestGitLabClient:
    """Test cases for GitLabClient initialization."""

    def test_init_with_valid_token(self):
        """Test GitLabClient initialization with valid token."""
        client = GitLabClient("test_token_123")

        assert client.token == "test_token_123"
        assert client.session.headers['PRIVATE-TOKEN'] == "test_token_123"
        assert 'GitLab-MR-Analyzer/1.0' in client.session.headers['User-Agent']
        assert client.api_url == "https://gitlab.com/api/v4"

    def test_init_with_empty_token(self):
        with pytest.raises(GitLabAuthenticationError, match="GitLab token is required"):
            GitLabClient("")

    def test_init_with_none_token(self):
        with pytest.raises(GitLabAuthenticationError, match="GitLab token is required"):
            GitLabClient(None)

    def test_from_config(self):
        """Test that transport settings come from the config value."""
        config = AnalyzerConfig(
            token="cfg_token",
            api_url="https://gitlab.example.com/api/v4/",
            timeout=12.5,
            max_retries=4
        )
        client = GitLabClient.from_config(config)

        assert client.token == "cfg_token"
        assert client.api_url == "https://gitlab.example.com/api/v4"
        assert client.timeout == 12.5
        assert client.max_retries == 4


class TestTokenValidation:
    """Test cases for token validation and API connectivity."""

    def setup_method(self):
        self.client = GitLabClient("test_token")

    @patch('requests.Session.get')
    def test_valid_token_validation(self, mock_get):
        mock_get.return_value = make_response(200, {'username': 'tester'})

        assert self.client.validate_token() is True
        mock_get.assert_called_once_with("https://gitlab.com/api/v4/user", timeout=30.0)

    @patch('requests.Session.get')
    def test_invalid_token_handling(self, mock_get):
        mock_get.return_value = make_response(401)

        with pytest.raises(GitLabAuthenticationError, match="Invalid GitLab token"):
            self.client.validate_token()

    @patch('requests.Session.get')
    def test_rate_limit_during_validation(self, mock_get):
        mock_get.return_value = make_response(429)

        with pytest.raises(GitLabRateLimitError, match="GitLab API rate limit exceeded"):
            self.client.validate_token()

    @patch('requests.Session.get')
    def test_connection_error_during_validation(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("Connection failed")

        with pytest.raises(GitLabAPIError, match="Failed to connect to GitLab API"):
            self.client.validate_token()


class TestAPIRequestHandling:
    """Test cases for retries and error mapping in API requests."""

    def setup_method(self):
        self.client = GitLabClient("test_token", max_retries=2, base_delay=0.01)

    @patch('requests.Session.get')
    def test_successful_api_request(self, mock_get):
        mock_get.return_value = make_response(200, {'data': 'test'})

        result = self.client._make_api_request("https://gitlab.com/api/v4/test", {'page': 1})

        assert result == {'data': 'test'}
        mock_get.assert_called_once_with("https://gitlab.com/api/v4/test", params={'page': 1}, timeout=30.0)

    @patch('gitlab_client.time.sleep')
    @patch('requests.Session.get')
    def test_retry_then_success(self, mock_get, mock_sleep):
        """Test that a transient server error is retried with backoff."""
        mock_get.side_effect = [make_response(502), make_response(200, [])]

        result = self.client._make_api_request("https://gitlab.com/api/v4/test")

        assert result == []
        assert mock_get.call_count == 2
        mock_sleep.assert_called_once_with(0.01)

    @patch('gitlab_client.time.sleep')
    @patch('requests.Session.get')
    def test_retries_exhausted(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.ConnectionError("Connection failed")

        with pytest.raises(GitLabAPIError, match="failed after 3 attempts"):
            self.client._make_api_request("https://gitlab.com/api/v4/test")

        assert mock_get.call_count == 3
        assert mock_sleep.call_count == 2

    @patch('requests.Session.get')
    def test_expired_token_not_retried(self, mock_get):
        mock_get.return_value = make_response(401)

        with pytest.raises(GitLabAuthenticationError, match="invalid or expired"):
            self.client._make_api_request("https://gitlab.com/api/v4/test")

        assert mock_get.call_count == 1

    @patch('requests.Session.get')
    def test_rate_limit_not_retried(self, mock_get):
        mock_get.return_value = make_response(429, headers={'RateLimit-Reset': '0'})

        with pytest.raises(GitLabRateLimitError):
            self.client._make_api_request("https://gitlab.com/api/v4/test")

        assert mock_get.call_count == 1

    @patch('requests.Session.get')
    def test_low_rate_limit_logging(self, mock_get, caplog):
        mock_get.return_value = make_response(
            200, [], headers={'RateLimit-Remaining': '10', 'RateLimit-Limit': '2000'}
        )

        self.client._make_api_request("https://gitlab.com/api/v4/test")

        assert "rate limit running low: 10/2000" in caplog.text


class TestPagedResources:
    """Test cases for page-level collection requests."""

    def setup_method(self):
        self.client = GitLabClient("test_token", base_delay=0.01)

    @patch('requests.Session.get')
    def test_list_merge_requests_reads_headers(self, mock_get):
        mock_get.return_value = make_response(
            200,
            [{'id': 1, 'iid': 1}, {'id': 2, 'iid': 2}],
            headers={'X-Total-Pages': '3', 'X-Total': '250', 'X-Page': '1'}
        )

        result = self.client.list_merge_requests(42, page=1, per_page=100)

        assert isinstance(result, PageResult)
        assert len(result.items) == 2
        assert result.total_pages == 3
        assert result.total_items == 250
        mock_get.assert_called_once_with(
            "https://gitlab.com/api/v4/projects/42/merge_requests",
            params={'state': 'all', 'per_page': 100, 'page': 1},
            timeout=30.0
        )

    @patch('requests.Session.get')
    def test_missing_pagination_headers_default_to_zero(self, mock_get):
        mock_get.return_value = make_response(200, [{'id': 1}])

        result = self.client.list_notes(42, 7, page=2, per_page=50)

        assert result.total_pages == 0
        assert result.total_items == 0
        mock_get.assert_called_once_with(
            "https://gitlab.com/api/v4/projects/42/merge_requests/7/notes",
            params={'per_page': 50, 'page': 2},
            timeout=30.0
        )

    @patch('requests.Session.get')
    def test_non_list_page_is_an_error(self, mock_get):
        mock_get.return_value = make_response(200, {'message': 'unexpected'})

        with pytest.raises(GitLabAPIError, match="Expected a list"):
            self.client.list_projects(5)


class TestGroupsAndProjects:
    """Test cases for group lookup and project fetching."""

    def setup_method(self):
        self.client = GitLabClient("test_token", base_delay=0.01)

    @patch('requests.Session.get')
    def test_find_group_id_exact_match(self, mock_get):
        mock_get.return_value = make_response(200, [
            {'id': 1, 'name': 'murid-archive', 'path': 'murid-archive'},
            {'id': 2, 'name': 'Murid', 'path': 'murid'}
        ])

        assert self.client.find_group_id('murid') == 2
        mock_get.assert_called_once_with(
            "https://gitlab.com/api/v4/groups", params={'search': 'murid', 'per_page': 100, 'page': 1}, timeout=30.0
        )

    @patch('requests.Session.get')
    def test_find_group_id_reads_later_pages(self, mock_get):
        """A broad search pushes the exact match past the first page."""
        first_page = [{'id': i, 'name': f'murid-{i}', 'path': f'murid-{i}'} for i in range(2)]
        mock_get.side_effect = [
            make_response(200, first_page, {'X-Total-Pages': '2', 'X-Total': '3'}),
            make_response(200, [{'id': 9, 'name': 'Murid', 'path': 'murid'}], {'X-Total-Pages': '2', 'X-Total': '3'})
        ]

        assert self.client.find_group_id('murid', per_page=2) == 9
        assert mock_get.call_count == 2
        assert mock_get.call_args.kwargs['params'] == {'search': 'murid', 'per_page': 2, 'page': 2}

    @patch('requests.Session.get')
    def test_find_group_id_no_match(self, mock_get):
        mock_get.return_value = make_response(200, [{'id': 1, 'name': 'other', 'path': 'other'}])

        assert self.client.find_group_id('murid') is None

    @patch('gitlab_client.time.sleep')
    @patch('requests.Session.get')
    def test_get_project_not_found(self, mock_get, mock_sleep):
        mock_get.return_value = make_response(404)

        with pytest.raises(GitLabAPIError, match="Project 99 not found"):
            self.client.get_project(99)


class TestApprovalEvents:
    """Test cases for the best-effort approval event fetch."""

    def setup_method(self):
        self.client = GitLabClient("test_token", base_delay=0.01)

    @patch('requests.Session.get')
    def test_approval_events_success(self, mock_get):
        events = [{'created_at': '2025-04-01T12:00:00.000Z', 'action': 'approved'}]
        mock_get.return_value = make_response(200, events)

        assert self.client.list_approval_events(42, 7) == events
        mock_get.assert_called_once_with(
            "https://gitlab.com/api/v4/projects/42/merge_requests/7/resource_approval_events",
            params=None,
            timeout=30.0
        )

    @patch('gitlab_client.time.sleep')
    @patch('requests.Session.get')
    def test_approval_events_failure_yields_empty_list(self, mock_get, mock_sleep):
        mock_get.return_value = make_response(403)

        assert self.client.list_approval_events(42, 7) == []

    @patch('requests.Session.get')
    def test_approval_events_rate_limited_yields_empty_list(self, mock_get):
        mock_get.return_value = make_response(429)

        assert self.client.list_approval_events(42, 7) == []
