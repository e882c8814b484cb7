"""GitLab API client implementation."""

import asyncio
import json
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import aiohttp
import requests
from loguru import logger
from pydantic import BaseModel

from ..config.config import GitLabInstanceConfig
from .exceptions import (
    GitLabAPIError,
    GitLabAuthenticationError,
    GitLabConnectionError,
    GitLabNotFoundError,
    GitLabRateLimitError,
    GitLabServerError,
)
from .retry import RetryPolicy


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


def _raise_for_status(status: int, headers: Dict[str, str], message: str) -> None:
    """Map an HTTP error status to the client's exception hierarchy."""
    if status == 429:
        retry_after = int(headers.get('Retry-After', 60))
        raise GitLabRateLimitError(
            f'Rate limit exceeded. Retry after {retry_after} seconds',
            retry_after=retry_after,
            status_code=status,
        )
    if status in (401, 403):
        raise GitLabAuthenticationError(
            'Authentication failed', status_code=status
        )
    if status == 404:
        raise GitLabNotFoundError('Resource not found', status_code=status)
    if status >= 500:
        raise GitLabServerError(
            f'Server error: {message}', status_code=status
        )
    raise GitLabAPIError(f'API request failed: {message}', status_code=status)


class GitLabClient:
    """Destination GitLab API client with token authentication."""

    def __init__(
        self,
        config: GitLabInstanceConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize GitLab client.

        Args:
            config: GitLab instance configuration
            retry_policy: Backoff policy for async calls
        """
        self.config = config
        self.base_url = f'{config.url.rstrip("/")}/api/{config.api_version}'
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = requests.Session()

        self.session.headers.update(self._auth_headers())
        self.session.headers.update(
            {'Content-Type': 'application/json', 'User-Agent': 'svn-migrate/0.1.0'}
        )

        logger.info(f'Initialized GitLab client for {config.url}')

    def _auth_headers(self) -> Dict[str, str]:
        if self.config.token:
            return {'Private-Token': self.config.token}
        if self.config.oauth_token:
            return {'Authorization': f'Bearer {self.config.oauth_token}'}
        raise GitLabAuthenticationError('No authentication token provided')

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL from endpoint.

        Args:
            endpoint: API endpoint path

        Returns:
            Full API URL
        """
        return urljoin(self.base_url + '/', endpoint.lstrip('/'))

    def _handle_response(self, response: requests.Response) -> APIResponse:
        """Handle API response and convert to standard format.

        Raises:
            GitLabAPIError: For various API errors
        """
        headers = dict(response.headers)

        if response.status_code >= 400:
            try:
                message = response.json().get('message', f'HTTP {response.status_code}')
            except (ValueError, AttributeError):
                message = f'HTTP {response.status_code}: {response.text}'
            _raise_for_status(response.status_code, headers, str(message))

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        return APIResponse(
            status_code=response.status_code,
            data=data,
            headers=headers,
            success=200 <= response.status_code < 300,
        )

    def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        """Make GET request."""
        url = self._build_url(endpoint)
        kwargs.setdefault('timeout', self.config.timeout)

        try:
            response = self.session.get(url, params=params, **kwargs)
        except requests.RequestException as e:
            logger.error(f'Network error during GET request: {e}')
            raise GitLabConnectionError(f'Network error: {e}')
        return self._handle_response(response)

    def post(
        self, endpoint: str, data: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        """Make POST request."""
        url = self._build_url(endpoint)
        kwargs.setdefault('timeout', self.config.timeout)

        try:
            response = self.session.post(url, json=data, **kwargs)
        except requests.RequestException as e:
            logger.error(f'Network error during POST request: {e}')
            raise GitLabConnectionError(f'Network error: {e}')
        return self._handle_response(response)

    async def _make_request_async(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> APIResponse:
        """Make one asynchronous API request without retrying."""
        url = self._build_url(endpoint)
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'svn-migrate/0.1.0',
        }
        headers.update(self._auth_headers())
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)

        try:
            async with aiohttp.ClientSession(headers=headers, timeout=timeout) as session:
                async with session.request(
                    method=method, url=url, params=params, json=data
                ) as response:
                    response_headers = dict(response.headers)
                    response_text = await response.text()

                    if response.status >= 400:
                        try:
                            message = json.loads(response_text).get(
                                'message', f'HTTP {response.status}'
                            )
                        except (ValueError, AttributeError):
                            message = f'HTTP {response.status}: {response_text}'
                        _raise_for_status(response.status, response_headers, str(message))

                    try:
                        response_data = json.loads(response_text) if response_text else None
                    except ValueError:
                        response_data = response_text

                    return APIResponse(
                        status_code=response.status,
                        data=response_data,
                        headers=response_headers,
                        success=200 <= response.status < 300,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f'Network error during API request: {e}')
            raise GitLabConnectionError(f'Network error: {e}')

    async def request_async(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> APIResponse:
        """Asynchronous API request with bounded retry on transient errors."""
        return await self.retry_policy.call(
            self._make_request_async, method, endpoint, params=params, data=data
        )

    async def get_project_async(self, project_id: int) -> Dict[str, Any]:
        """Look up a destination project.

        Raises:
            GitLabNotFoundError: If the project no longer exists
            GitLabAuthenticationError: If the token lost access
        """
        response = await self.request_async('GET', f'/projects/{project_id}')
        return response.data

    async def create_project_async(
        self, name: str, path: str, namespace_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Create an empty destination project with retry on transient errors."""
        payload: Dict[str, Any] = {
            'name': name,
            'path': path,
            'initialize_with_readme': False,
        }
        if namespace_id is not None:
            payload['namespace_id'] = namespace_id
        response = await self.request_async('POST', '/projects', data=payload)
        logger.info(f'Created GitLab project {path} (id={response.data.get("id")})')
        return response.data

    def build_push_url(self, project_data: Dict[str, Any]) -> str:
        """Authenticated push URL for a project.

        Raises:
            GitLabAPIError: If the project has no usable repository URL
        """
        http_url = project_data.get('http_url_to_repo')
        if not http_url:
            raise GitLabAPIError(
                f'Project {project_data.get("id")} has no HTTP repository URL'
            )
        token = self.config.token or self.config.oauth_token
        for scheme in ('https://', 'http://'):
            if http_url.startswith(scheme):
                return http_url.replace(scheme, f'{scheme}oauth2:{token}@', 1)
        return http_url

    def test_connection(self) -> bool:
        """Test connection to GitLab instance.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            response = self.get('/user')
            return response.success
        except GitLabAPIError as e:
            logger.error(f'Connection test failed: {e}')
            return False

    def close(self):
        """Close the client session."""
        self.session.close()
        logger.debug('GitLab client session closed')

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
