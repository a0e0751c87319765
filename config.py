"""
Run configuration for the GitLab MR analyzer.

The configuration is an immutable value built once at start-up and handed
to each component, so nothing below the command line reads the environment.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

from dotenv import load_dotenv

from gitlab_client import DEFAULT_API_URL


DEFAULT_GROUP_NAME = 'murid'
DEFAULT_DATABASE_PATH = 'gitlab_data.sqlite'


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""
    pass


@dataclass(frozen=True)
class AnalyzerConfig:
    """
    Process-wide settings: credential, group, endpoint, store and transport limits.

    The token may be absent for commands that only read the local store;
    GitLabClient refuses to start without one.
    """

    token: Optional[str] = None
    group_name: str = DEFAULT_GROUP_NAME
    api_url: str = DEFAULT_API_URL
    database_path: str = DEFAULT_DATABASE_PATH
    per_page: int = 100
    timeout: float = 30.0
    max_retries: int = 2

    def __post_init__(self):
        if not self.group_name:
            raise ConfigError("group_name must not be empty")
        if not self.database_path:
            raise ConfigError("database_path must not be empty")
        if self.per_page < 1 or self.per_page > 100:
            raise ConfigError("per_page must be between 1 and 100")
        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")
        if self.max_retries < 0:
            raise ConfigError("max_retries cannot be negative")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> 'AnalyzerConfig':
        """
        Build configuration from the environment, loading a .env file first.

        Recognised variables: GITLAB_TOKEN, GITLAB_GROUP, GITLAB_API_URL and
        GITLAB_DB_PATH. Keyword overrides that are not None win over the
        environment.

        Raises:
            ConfigError: If a resulting value is invalid
        """
        load_dotenv(env_file)

        config = cls(
            token=os.environ.get('GITLAB_TOKEN') or None,
            group_name=os.environ.get('GITLAB_GROUP') or DEFAULT_GROUP_NAME,
            api_url=os.environ.get('GITLAB_API_URL') or DEFAULT_API_URL,
            database_path=os.environ.get('GITLAB_DB_PATH') or DEFAULT_DATABASE_PATH
        )

        overrides = {key: value for key, value in overrides.items() if value is not None}
        return replace(config, **overrides) if overrides else config
