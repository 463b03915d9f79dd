#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Terraform Module CI Status Page - Live Build Dashboard for an Organization

This script serves an HTML page showing the Jenkins build status of tracked
branches for every Terraform module repository of a GitHub organization:
- Repository discovery via the GitHub REST API (paginated, archived excluded)
- Classification of repositories into provider buckets by name prefix
- Concurrent per-branch build status probes against Jenkins
- Markdown table generation converted to a self-contained HTML page

Architecture:
- Single script with modular internal structure
- Two background refresh loops (repositories, build status) feeding
  in-memory snapshot stores
- HTTP server that only ever reads the last published page
- Configuration-driven with built-in defaults + YAML override + CLI/env
"""

import argparse
import concurrent.futures
import copy
import datetime
import hashlib
import html
import json
import logging
import os
import re
import signal
import sys
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, urlparse

try:
    import yaml  # type: ignore
except ImportError:
    print(
        "ERROR: PyYAML is required. Install with: pip install PyYAML", file=sys.stderr
    )
    sys.exit(1)

try:
    import httpx  # type: ignore
except ImportError:
    print("ERROR: httpx is required. Install with: pip install httpx", file=sys.stderr)
    sys.exit(1)

# =============================================================================
# CONSTANTS
# =============================================================================

SCRIPT_VERSION = "1.0.0"
GENERATOR = f"terraform-statuspage {SCRIPT_VERSION}"
USER_AGENT = f"terraform-statuspage/{SCRIPT_VERSION}"
LOGGER_NAME = "statuspage"
SCRIPT_DIR = Path(__file__).resolve().parent
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Configuration sections that must stay mappings after the YAML merge
MAPPING_SECTIONS = (
    "github",
    "jenkins",
    "intervals",
    "html",
    "badges",
    "server",
    "logging",
)

# Intermediate caches may keep the rendered page for 10 minutes
CACHE_MAX_AGE = 600

STATUS_NOT_RUN = "not_run"
STATUS_PASSING = "passing"
STATUS_RUNNING = "running"
STATUS_FAILING = "failing"
STATUS_ABORTED = "aborted"

# Plain-text answers of the Jenkins embeddable-build-status text endpoint
TEXT_STATUS_MAP = {
    "Success": STATUS_PASSING,
    "In progress": STATUS_RUNNING,
    "Failed": STATUS_FAILING,
    "Aborted": STATUS_ABORTED,
}

FAVICON_PATHS = frozenset(
    {
        "/favicon.ico",
        "/favicon-16x16.png",
        "/favicon-32x32.png",
        "/apple-touch-icon.png",
    }
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "title": "DC/OS Terraform modules - CI STATUS",
    "prefix": "terraform-",
    "providers": ["aws", "azurerm", "gcp"],
    "branches": ["master", "support/0.2.x", "support/0.1.x"],
    "github": {
        "api_url": "https://api.github.com",
        "timeout": 30.0,
        "per_page": 100,
    },
    "jenkins": {
        "url": "https://jenkins-terraform.mesosphere.com/service/dcos-terraform-jenkins",
        "timeout": 30.0,
    },
    "intervals": {
        "org_refresh": "60m",
        "ci_refresh": "3m",
        "shutdown_timeout": "15s",
    },
    "html": {
        "stylesheet": "/static/css/style.css",
        "favicon": "/favicon.ico",
    },
    "badges": {
        STATUS_PASSING: "https://img.shields.io/badge/build-passing-brightgreen.svg",
        STATUS_RUNNING: "https://img.shields.io/badge/build-running-blue.svg",
        STATUS_FAILING: "https://img.shields.io/badge/build-failing-red.svg",
        STATUS_ABORTED: "https://img.shields.io/badge/build-aborted-lightgrey.svg",
        STATUS_NOT_RUN: "https://img.shields.io/badge/build-not%20run-lightgrey.svg",
    },
    "server": {
        # Unset means the static/ directory next to this script
        "static_dir": None,
    },
    "logging": {
        "level": "INFO",
        "include_timestamps": True,
    },
}

# =============================================================================
# ERRORS
# =============================================================================


class StatusPageError(Exception):
    """Base exception for status page errors."""

    pass


class ConfigurationError(StatusPageError):
    """Raised when the resolved configuration is incomplete or invalid."""

    pass


class GitHubAPIError(StatusPageError):
    """Raised when the repository listing cannot be fetched or decoded."""

    pass


class JenkinsAPIError(StatusPageError):
    """Raised when a Jenkins build status request fails at transport level."""

    pass


# =============================================================================
# API STATISTICS TRACKING
# =============================================================================


class APIStatistics:
    """Track statistics for external API calls (GitHub, Jenkins)."""

    def __init__(self):
        """Initialize statistics tracker."""
        self.stats = {
            "github": {"success": 0, "errors": {}},
            "jenkins": {"success": 0, "errors": {}},
        }
        # Jenkins probes record from executor threads
        self._lock = threading.Lock()

    def record_success(self, api_type: str) -> None:
        """Record a successful API call."""
        with self._lock:
            if api_type in self.stats:
                self.stats[api_type]["success"] += 1

    def record_error(self, api_type: str, status_code: int) -> None:
        """Record an API error by status code."""
        with self._lock:
            if api_type in self.stats:
                errors = self.stats[api_type]["errors"]
                errors[status_code] = errors.get(status_code, 0) + 1

    def record_exception(self, api_type: str, error_type: str = "exception") -> None:
        """Record an API exception (non-HTTP error)."""
        self.record_error(api_type, error_type)  # type: ignore[arg-type]

    def get_total_calls(self, api_type: str) -> int:
        """Get total number of API calls (success + errors)."""
        if api_type not in self.stats:
            return 0
        with self._lock:
            success = self.stats[api_type]["success"]
            errors = sum(self.stats[api_type]["errors"].values())
        return success + errors

    def get_total_errors(self, api_type: str) -> int:
        """Get total number of errors for an API."""
        if api_type not in self.stats:
            return 0
        with self._lock:
            return sum(self.stats[api_type]["errors"].values())

    def has_errors(self) -> bool:
        """Check if any API has errors."""
        return any(self.get_total_errors(api_type) > 0 for api_type in self.stats)

    def format_console_output(self) -> str:
        """Format statistics for log output."""
        lines = []
        labels = {"github": "GitHub", "jenkins": "Jenkins"}

        for api_type, label in labels.items():
            if self.get_total_calls(api_type) == 0:
                continue
            lines.append(f"{label} API Statistics:")
            lines.append(f"   Successful calls: {self.stats[api_type]['success']}")
            total_errors = self.get_total_errors(api_type)
            if total_errors > 0:
                lines.append(f"   Failed calls: {total_errors}")
                for code, count in sorted(
                    self.stats[api_type]["errors"].items(), key=lambda x: str(x[0])
                ):
                    lines.append(f"      - Error {code}: {count}")

        return "\n".join(lines)


# Global statistics tracker
api_stats = APIStatistics()


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO", include_timestamps: bool = True
) -> logging.Logger:
    """Configure logging with structured format."""
    log_format = "[%(levelname)s]"
    if include_timestamps:
        log_format = "[%(asctime)s] " + log_format
    log_format += " %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S" if include_timestamps else None,
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    return logger


# =============================================================================
# CONFIGURATION LOADING AND DEEP MERGE
# =============================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as
    ``90s``, ``3m``, ``1h30m`` or ``250ms``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            seconds = float(text)
        else:
            seconds = 0.0
            position = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    raise ValueError(f"Invalid duration: {value!r}")
                amount = float(match.group(1))
                unit = match.group(2)
                if unit == "h":
                    seconds += amount * 3600
                elif unit == "m":
                    seconds += amount * 60
                elif unit == "s":
                    seconds += amount
                else:
                    seconds += amount / 1000
                position = match.end()
            if position == 0 or position != len(text):
                raise ValueError(f"Invalid duration: {value!r}")

    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


def deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {config_path} must contain a mapping at top level"
        )
    return data


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of the configuration that is safe to print or hash."""
    redacted = copy.deepcopy(config)
    if redacted.get("token"):
        redacted["token"] = "***"
    return redacted


def compute_config_digest(config: Dict[str, Any]) -> str:
    """Compute SHA256 digest of configuration for reproducibility tracking."""
    config_json = json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(config_json.encode("utf-8")).hexdigest()


def _validate_name_list(config: Dict[str, Any], key: str) -> None:
    values = config.get(key)
    if not isinstance(values, list) or not values:
        raise ConfigurationError(f"'{key}' must be a non-empty list")
    for value in values:
        if not isinstance(value, str) or not value:
            raise ConfigurationError(f"'{key}' entries must be non-empty strings")


def resolve_configuration(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Resolve configuration from defaults, the optional YAML file and CLI/env.

    Args:
        args: Parsed command line arguments (environment already applied
            as argparse defaults)

    Returns:
        Resolved configuration with intervals converted to seconds

    Raises:
        ConfigurationError: A required option is missing or a value is invalid
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if args.config:
        config = deep_merge_dicts(config, load_yaml_config(Path(args.config)))

    for section in MAPPING_SECTIONS:
        if not isinstance(config.get(section), dict):
            raise ConfigurationError(f"'{section}' must be a mapping")

    if args.prefix is not None:
        config["prefix"] = args.prefix
    if args.org_refresh is not None:
        config["intervals"]["org_refresh"] = args.org_refresh
    if args.ci_refresh is not None:
        config["intervals"]["ci_refresh"] = args.ci_refresh
    if args.timeout is not None:
        config["intervals"]["shutdown_timeout"] = args.timeout
    if args.jenkins_url:
        config["jenkins"]["url"] = args.jenkins_url
    if args.static_dir:
        config["server"]["static_dir"] = args.static_dir
    config["fail_fast"] = bool(args.fail_fast)

    if args.log_level:
        config["logging"]["level"] = args.log_level
    elif args.verbose:
        config["logging"]["level"] = "DEBUG"
    level = config["logging"].get("level")
    if isinstance(level, str):
        level = level.upper()
    if level not in LOG_LEVELS:
        raise ConfigurationError(
            f"logging.level must be one of {', '.join(LOG_LEVELS)}, got {level!r}"
        )
    config["logging"]["level"] = level
    if not config["server"].get("static_dir"):
        config["server"]["static_dir"] = str(SCRIPT_DIR / "static")

    missing = []
    if args.listen is None:
        missing.append("--listen/LISTEN_PORT")
    if not args.token:
        missing.append("--token/GITHUB_TOKEN")
    if not args.org:
        missing.append("--org/GITHUB_ORG")
    if missing:
        raise ConfigurationError(
            f"the following required options are missing: {', '.join(missing)}"
        )

    try:
        listen = int(args.listen)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid listen port: {args.listen!r}")
    if not 0 <= listen <= 65535:
        raise ConfigurationError(f"Listen port out of range: {listen}")

    config["listen"] = listen
    config["token"] = args.token
    config["org"] = args.org

    for key, value in list(config["intervals"].items()):
        try:
            config["intervals"][key] = parse_duration(value)
        except ValueError as e:
            raise ConfigurationError(f"intervals.{key}: {e}")
    for key in ("org_refresh", "ci_refresh"):
        if config["intervals"][key] <= 0:
            raise ConfigurationError(f"intervals.{key} must be greater than zero")

    _validate_name_list(config, "providers")
    _validate_name_list(config, "branches")
    if not isinstance(config.get("prefix"), str):
        raise ConfigurationError("'prefix' must be a string")
    if not isinstance(config["jenkins"].get("url"), str) or not config["jenkins"]["url"]:
        raise ConfigurationError("'jenkins.url' must be a non-empty string")

    badges = config.get("badges", {})
    for status in (
        STATUS_NOT_RUN,
        STATUS_PASSING,
        STATUS_RUNNING,
        STATUS_FAILING,
        STATUS_ABORTED,
    ):
        if not badges.get(status):
            raise ConfigurationError(f"Missing badge icon for status '{status}'")

    return config


# =============================================================================
# SHARED SNAPSHOT STATE
# =============================================================================


class SnapshotStore:
    """
    Holds the latest published value of a shared cache.

    Writers replace the whole value with ``publish``; readers get the
    current reference from ``current``. Published values must not be
    mutated afterwards, so a reader keeps a consistent snapshot even while
    a newer one is being published.
    """

    def __init__(self, name: str, initial: Any = None) -> None:
        self.name = name
        self._value = initial
        self._version = 0
        self._published_at: Optional[datetime.datetime] = None
        self._lock = threading.Lock()

    def publish(self, value: Any) -> int:
        """Atomically replace the current value and return the new version."""
        with self._lock:
            self._value = value
            self._version += 1
            self._published_at = datetime.datetime.now(datetime.timezone.utc)
            return self._version

    def current(self) -> Any:
        with self._lock:
            return self._value

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    @property
    def published_at(self) -> Optional[datetime.datetime]:
        with self._lock:
            return self._published_at


# =============================================================================
# GITHUB REPOSITORY FETCHER
# =============================================================================


class GitHubAPIClient:
    """Client for listing organization repositories via the GitHub REST API."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        per_page: int = 100,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize GitHub API client with token."""
        self.base_url = api_url.rstrip("/")
        self.per_page = per_page
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": USER_AGENT,
            },
            transport=transport,
        )
        self.logger = logging.getLogger(LOGGER_NAME)
        self.stats = stats or api_stats

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Close the HTTP client."""
        if hasattr(self, "client"):
            self.client.close()

    def list_org_repositories(self, org: str) -> list[dict[str, Any]]:
        """
        Fetch every repository of an organization.

        Follows the ``Link: rel="next"`` header until the last page and
        returns the raw repository objects of all pages in API order.

        Raises:
            GitHubAPIError: On transport errors, non-200 answers or
                undecodable bodies
        """
        url: Optional[str] = f"/orgs/{quote(org, safe='')}/repos"
        params: Optional[dict[str, Any]] = {"per_page": self.per_page, "type": "all"}
        repositories: list[dict[str, Any]] = []
        page = 0

        while url:
            page += 1
            try:
                response = self.client.get(url, params=params)
            except httpx.HTTPError as e:
                self.stats.record_exception("github")
                raise GitHubAPIError(
                    f"GitHub API query exception for org {org} (page {page}): {e}"
                ) from e

            if response.status_code != 200:
                self.stats.record_error("github", response.status_code)
                raise GitHubAPIError(
                    f"GitHub API query returned error code: {response.status_code} "
                    f"for org {org} (page {page}): {response.text[:200]}"
                )
            self.stats.record_success("github")

            try:
                data = response.json()
            except ValueError as e:
                raise GitHubAPIError(
                    f"Invalid JSON in GitHub API response for org {org} (page {page}): {e}"
                ) from e
            if not isinstance(data, list):
                raise GitHubAPIError(
                    f"Unexpected GitHub API response for org {org} (page {page}): "
                    f"expected a list, got {type(data).__name__}"
                )

            repositories.extend(data)
            self.logger.debug(
                f"Fetched page {page} for org {org}: {len(data)} repositories"
            )

            next_link = response.links.get("next")
            url = next_link.get("url") if next_link else None
            # The next link already carries the query string
            params = None

        return repositories


def to_repository(item: dict[str, Any]) -> dict[str, Any]:
    """Reduce a GitHub API repository object to the fields the page needs."""
    owner = item.get("owner") or {}
    return {
        "id": item.get("id"),
        "name": item["name"],
        "owner": owner.get("login", ""),
        "archived": bool(item.get("archived", False)),
    }


def partition_repositories(
    repositories: List[dict[str, Any]], providers: List[str], prefix: str
) -> Mapping[str, Tuple[dict[str, Any], ...]]:
    """
    Classify non-archived repositories into provider buckets.

    A repository lands in every bucket whose ``^(prefix)(provider).*$``
    pattern matches its name, so one repository may appear in several
    buckets. Bucket order follows the input order.
    """
    active = [repo for repo in repositories if not repo["archived"]]
    buckets: dict[str, Tuple[dict[str, Any], ...]] = {}

    for provider in providers:
        pattern = re.compile(f"^({re.escape(prefix)})({re.escape(provider)}).*$")
        buckets[provider] = tuple(
            MappingProxyType(repo) for repo in active if pattern.match(repo["name"])
        )

    return MappingProxyType(buckets)


class RepositoryFetcher:
    """Fetches organization repositories and publishes provider buckets."""

    def __init__(
        self,
        github: GitHubAPIClient,
        providers: List[str],
        prefix: str,
        store: SnapshotStore,
        logger: logging.Logger,
    ) -> None:
        self.github = github
        self.providers = list(providers)
        self.prefix = prefix
        self.store = store
        self.logger = logger

    def fetch(self, org: str) -> Mapping[str, Tuple[dict[str, Any], ...]]:
        """Rebuild and publish all provider buckets for ``org``."""
        items = self.github.list_org_repositories(org)

        try:
            repositories = [to_repository(item) for item in items]
        except (KeyError, TypeError, AttributeError) as e:
            raise GitHubAPIError(f"Malformed repository object for org {org}: {e}") from e

        archived = sum(1 for repo in repositories if repo["archived"])
        buckets = partition_repositories(repositories, self.providers, self.prefix)
        self.store.publish(buckets)

        bucket_summary = ", ".join(
            f"{provider}={len(repos)}" for provider, repos in buckets.items()
        )
        self.logger.info(
            f"Fetched {len(repositories)} repositories for {org} "
            f"({archived} archived): {bucket_summary}"
        )
        return buckets


# =============================================================================
# JENKINS BUILD STATUS PROBER
# =============================================================================


def escape_branch(branch: str) -> str:
    """
    Escape a branch name twice for use in a Jenkins job path.

    ``support/0.1.x`` becomes ``support%252F0.1.x``; Jenkins multibranch
    job names already contain the branch name escaped once.
    """
    return quote(quote(branch, safe=""), safe="")


def classify_status(status_code: int, body: str) -> str:
    """Map a Jenkins text status answer to a build status."""
    if status_code != 200:
        return STATUS_NOT_RUN
    return TEXT_STATUS_MAP.get(body.strip(), STATUS_NOT_RUN)


class JenkinsAPIClient:
    """Client for the Jenkins embeddable build status endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize Jenkins API client."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.stats = stats or api_stats
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Close the HTTP client."""
        if hasattr(self, "client"):
            self.client.close()

    def text_status_url(self, org: str, repo: str, branch: str) -> str:
        # Built by hand: passing ``job`` as a param would escape it a third time
        return (
            f"{self.base_url}/buildStatus/text?job={org}/{repo}/{escape_branch(branch)}"
        )

    def job_url(self, org: str, repo: str, branch: str) -> str:
        return f"{self.base_url}/job/{org}/job/{repo}/job/{escape_branch(branch)}/"

    def get_text_status(self, org: str, repo: str, branch: str) -> Tuple[int, str]:
        """
        Query the plain-text build status of one branch job.

        Returns:
            Tuple of HTTP status code and response body

        Raises:
            JenkinsAPIError: On transport errors
        """
        url = self.text_status_url(org, repo, branch)
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            self.stats.record_exception("jenkins")
            raise JenkinsAPIError(
                f"Jenkins status query exception for {org}/{repo}@{branch}: {e}"
            ) from e

        if response.status_code == 200:
            self.stats.record_success("jenkins")
        else:
            self.stats.record_error("jenkins", response.status_code)
            logging.getLogger(LOGGER_NAME).debug(
                f"Jenkins status query returned {response.status_code} for {url}"
            )
        return response.status_code, response.text


class BuildStatusProber:
    """Probes the build status of every tracked branch of a repository."""

    def __init__(
        self,
        jenkins: JenkinsAPIClient,
        org: str,
        branches: List[str],
        badges: Dict[str, str],
        logger: logging.Logger,
    ) -> None:
        self.jenkins = jenkins
        self.org = org
        self.branches = list(branches)
        self.badges = dict(badges)
        self.logger = logger

    def _probe_branch(self, repository_name: str, branch: str) -> dict[str, str]:
        status_code, body = self.jenkins.get_text_status(
            self.org, repository_name, branch
        )
        status = classify_status(status_code, body)
        self.logger.debug(f"{repository_name}@{branch}: {status}")
        return {
            "branch": branch,
            "status": status,
            "icon": self.badges[status],
            "link": self.jenkins.job_url(self.org, repository_name, branch),
        }

    def probe(self, repository_name: str) -> list[dict[str, str]]:
        """
        Probe all branches of one repository concurrently.

        Results are returned in Branch List order, whatever order the
        individual requests complete in.

        Raises:
            JenkinsAPIError: If any branch request failed; raised only
                after every branch request has finished
        """
        if not self.branches:
            return []

        results: list[Optional[dict[str, str]]] = [None] * len(self.branches)
        errors: list[JenkinsAPIError] = []

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(self.branches), thread_name_prefix="probe"
        ) as executor:
            future_to_index = {
                executor.submit(self._probe_branch, repository_name, branch): index
                for index, branch in enumerate(self.branches)
            }

            for future in concurrent.futures.as_completed(future_to_index):
                index = future_to_index[future]
                try:
                    results[index] = future.result()
                except JenkinsAPIError as e:
                    errors.append(e)

        if errors:
            raise errors[0]

        return [result for result in results if result is not None]


# =============================================================================
# CONTENT RENDERING (MARKDOWN + HTML)
# =============================================================================


def format_badge(result: dict[str, str]) -> str:
    """Markdown badge image linked to the Jenkins job page."""
    return f"[![{result['status']}]({result['icon']})]({result['link']})"


def generate_provider_section(
    provider: str,
    branches: List[str],
    rows: List[Tuple[str, List[dict[str, str]]]],
) -> str:
    """
    Generate the markdown section of one provider.

    Args:
        provider: Provider key, used as heading and first column title
        branches: Branch List, one column each
        rows: ``(repository name, build results)`` pairs in bucket order
    """
    lines = [
        f"## {provider}",
        "",
        "| " + " | ".join([provider] + list(branches)) + " |",
        "| " + " | ".join(["---"] * (len(branches) + 1)) + " |",
    ]
    for name, results in rows:
        cells = [name] + [format_badge(result) for result in results]
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)


def _slugify(text: str) -> str:
    """Convert text to URL-friendly slug."""
    slug = re.sub(r"[^\w\s-]", "", text).strip().lower()
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug


_IMAGE_LINK = re.compile(r"\[!\[([^\]]*)\]\(([^)\s]+)\)\]\(([^)\s]+)\)")
_IMAGE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)\)")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
_TABLE_SEPARATOR = re.compile(r"^\|[\s\-\|:]+\|$")


def _convert_inline(text: str) -> str:
    text = html.escape(text, quote=True)
    text = _IMAGE_LINK.sub(r'<a href="\3"><img src="\2" alt="\1"></a>', text)
    text = _IMAGE.sub(r'<img src="\2" alt="\1">', text)
    text = _LINK.sub(r'<a href="\2">\1</a>', text)
    text = re.sub(r"\*\*(.*?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"`(.*?)`", r"<code>\1</code>", text)
    return text


def markdown_body_to_html(markdown: str) -> str:
    """Simple Markdown to HTML conversion for headers, tables and paragraphs."""
    html_lines = []
    lines = markdown.split("\n")
    in_table = False

    for i, line in enumerate(lines):
        stripped = line.strip()

        if in_table and not ("|" in line and stripped):
            html_lines.append("</tbody></table>")
            in_table = False

        # Headers
        if line.startswith("# "):
            content = line[2:].strip()
            html_lines.append(
                f'<h1 id="{_slugify(content)}">{_convert_inline(content)}</h1>'
            )
        elif line.startswith("## "):
            content = line[3:].strip()
            html_lines.append(
                f'<h2 id="{_slugify(content)}">{_convert_inline(content)}</h2>'
            )
        elif line.startswith("### "):
            content = line[4:].strip()
            html_lines.append(
                f'<h3 id="{_slugify(content)}">{_convert_inline(content)}</h3>'
            )

        # Tables
        elif "|" in line and stripped:
            if not in_table:
                html_lines.append("<table>")
                in_table = True

            if _TABLE_SEPARATOR.match(stripped):
                continue

            cells = [cell.strip() for cell in stripped.strip("|").split("|")]
            is_header = i + 1 < len(lines) and _TABLE_SEPARATOR.match(
                lines[i + 1].strip()
            )

            if is_header:
                html_lines.append("<thead><tr>")
                for cell in cells:
                    html_lines.append(f"<th>{_convert_inline(cell)}</th>")
                html_lines.append("</tr></thead><tbody>")
            else:
                html_lines.append("<tr>")
                for cell in cells:
                    html_lines.append(f"<td>{_convert_inline(cell)}</td>")
                html_lines.append("</tr>")

        # Regular paragraphs
        elif stripped:
            html_lines.append(f"<p>{_convert_inline(stripped)}</p>")

    if in_table:
        html_lines.append("</tbody></table>")

    return "\n".join(html_lines)


def markdown_to_html(markdown: str, config: Dict[str, Any]) -> str:
    """Convert a markdown document into a complete HTML page."""
    html_body = markdown_body_to_html(markdown)
    title = html.escape(config.get("title", DEFAULT_CONFIG["title"]))
    html_config = config.get("html", {})
    stylesheet = html.escape(
        html_config.get("stylesheet", DEFAULT_CONFIG["html"]["stylesheet"])
    )
    favicon = html.escape(html_config.get("favicon", DEFAULT_CONFIG["html"]["favicon"]))

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta name="generator" content="{GENERATOR}">
    <title>{title}</title>
    <link rel="stylesheet" href="{stylesheet}" type="text/css">
    <link rel="icon" href="{favicon}">
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Roboto', sans-serif;
            line-height: 1.6;
            max-width: 1200px;
            margin: 0 auto;
            padding: 20px;
        }}

        table {{
            width: 100%;
            border-collapse: collapse;
            margin: 1em 0;
        }}

        th, td {{
            border: 1px solid #ddd;
            padding: 6px 12px;
            text-align: left;
        }}
    </style>
</head>
<body>
{html_body}
</body>
</html>
"""


class ContentRenderer:
    """Builds the status page from the current provider buckets."""

    def __init__(
        self,
        config: Dict[str, Any],
        prober: BuildStatusProber,
        bucket_store: SnapshotStore,
        page_store: SnapshotStore,
        logger: logging.Logger,
    ) -> None:
        self.config = config
        self.prober = prober
        self.bucket_store = bucket_store
        self.page_store = page_store
        self.logger = logger

    def render(self) -> str:
        """Probe every bucketed repository and publish a fresh page."""
        buckets = self.bucket_store.current()
        if buckets is None:
            raise StatusPageError("No repository snapshot has been published yet")

        markdown_content = self.generate_markdown(buckets)
        page = markdown_to_html(markdown_content, self.config)
        self.page_store.publish(page)

        self.logger.info(
            f"Rendered status page ({sum(len(r) for r in buckets.values())} rows, "
            f"{len(page)} bytes)"
        )
        return page

    def generate_markdown(self, buckets: Mapping[str, Tuple[dict[str, Any], ...]]) -> str:
        """Generate the complete markdown document for one render cycle."""
        branches = self.config["branches"]
        sections = [f"# {self.config['title']}"]

        for provider in self.config["providers"]:
            rows = []
            for repo in buckets.get(provider, ()):
                rows.append((repo["name"], self.prober.probe(repo["name"])))
            sections.append(generate_provider_section(provider, branches, rows))

        generated_at = datetime.datetime.now(datetime.timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S UTC"
        )
        sections.append(f"Generated {generated_at} by `{GENERATOR}`")

        return "\n\n".join(sections) + "\n"


# =============================================================================
# REFRESH SCHEDULER
# =============================================================================


class RefreshLoop(threading.Thread):
    """Background thread that re-runs one refresh task on a fixed interval."""

    def __init__(
        self,
        name: str,
        task: Callable[[], Any],
        interval: float,
        stop_event: threading.Event,
        logger: logging.Logger,
        fail_fast: bool = False,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.task = task
        self.interval = interval
        self.stop_event = stop_event
        self.logger = logger
        self.fail_fast = fail_fast
        self.on_fatal = on_fatal
        self.runs = 0
        self.failures = 0

    def run(self):
        """Main refresh loop; the first run happens one interval after start."""
        self.logger.info(f"Refresh loop {self.name} started (interval: {self.interval}s)")

        while not self.stop_event.wait(timeout=self.interval):
            if not self.run_once() and self.fail_fast:
                break

        self.logger.debug(f"Refresh loop {self.name} stopped")

    def run_once(self) -> bool:
        """
        Run the task once.

        A failure is logged and leaves the previously published snapshot in
        place. In fail-fast mode ``on_fatal`` is notified instead.
        """
        self.runs += 1
        cycle_id = f"{self.name}-{self.runs}"
        try:
            self.task()
        except Exception as e:
            self.failures += 1
            # Unexpected exception types are bugs, keep their traceback
            self.logger.error(
                f"[{cycle_id}] Refresh failed: {e}",
                exc_info=not isinstance(e, StatusPageError),
            )
            if self.fail_fast:
                self.logger.error(f"[{cycle_id}] Fail-fast mode: stopping the status page")
                if self.on_fatal:
                    self.on_fatal(e)
            return False

        self.logger.debug(f"[{cycle_id}] Refresh completed")
        return True


class StatusPageApp:
    """Wires clients, caches, fetcher, prober, renderer and refresh loops."""

    def __init__(
        self,
        config: Dict[str, Any],
        logger: logging.Logger,
        stats: Optional[APIStatistics] = None,
        github_transport: Optional[httpx.BaseTransport] = None,
        jenkins_transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self.stats = stats or api_stats
        self.stop_event = threading.Event()
        self.shutdown_requested = threading.Event()
        self.fatal_error: Optional[BaseException] = None
        self.loops: list[RefreshLoop] = []

        self.bucket_store = SnapshotStore("buckets")
        self.page_store = SnapshotStore("page")

        github_config = config.get("github", {})
        self.github = GitHubAPIClient(
            config["token"],
            api_url=github_config.get("api_url", "https://api.github.com"),
            timeout=float(github_config.get("timeout", 30.0)),
            per_page=int(github_config.get("per_page", 100)),
            stats=self.stats,
            transport=github_transport,
        )
        jenkins_config = config.get("jenkins", {})
        self.jenkins = JenkinsAPIClient(
            jenkins_config["url"],
            timeout=float(jenkins_config.get("timeout", 30.0)),
            stats=self.stats,
            transport=jenkins_transport,
        )

        self.fetcher = RepositoryFetcher(
            self.github,
            config["providers"],
            config["prefix"],
            self.bucket_store,
            logger,
        )
        self.prober = BuildStatusProber(
            self.jenkins,
            config["org"],
            config["branches"],
            config["badges"],
            logger,
        )
        self.renderer = ContentRenderer(
            config, self.prober, self.bucket_store, self.page_store, logger
        )

    def refresh_repositories(self) -> None:
        self.fetcher.fetch(self.config["org"])

    def refresh_page(self) -> None:
        self.renderer.render()
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(self.stats.format_console_output())

    def initial_refresh(self) -> None:
        """Populate both caches synchronously before the server starts."""
        self.logger.info(f"Initial repository fetch for {self.config['org']}")
        self.refresh_repositories()
        self.logger.info("Initial status page render")
        self.refresh_page()

    def start_refresh_loops(self) -> None:
        intervals = self.config["intervals"]
        fail_fast = self.config.get("fail_fast", False)
        self.loops = [
            RefreshLoop(
                "org-refresh",
                self.refresh_repositories,
                intervals["org_refresh"],
                self.stop_event,
                self.logger,
                fail_fast=fail_fast,
                on_fatal=self._on_fatal,
            ),
            RefreshLoop(
                "ci-refresh",
                self.refresh_page,
                intervals["ci_refresh"],
                self.stop_event,
                self.logger,
                fail_fast=fail_fast,
                on_fatal=self._on_fatal,
            ),
        ]
        for loop in self.loops:
            loop.start()

    def _on_fatal(self, error: BaseException) -> None:
        self.fatal_error = error
        self.shutdown_requested.set()

    def stop(self) -> None:
        """Ask the refresh loops to exit after their current cycle."""
        self.stop_event.set()

    def close(self) -> None:
        self.github.close()
        self.jenkins.close()


# =============================================================================
# HTTP SERVER
# =============================================================================


class StatusPageRequestHandler(SimpleHTTPRequestHandler):
    """Serves the cached page, the liveness endpoint and static assets."""

    server_version = f"terraform-statuspage/{SCRIPT_VERSION}"

    def __init__(self, request, client_address, server):
        super().__init__(request, client_address, server, directory=server.static_dir)

    def translate_path(self, path):
        parsed = urlparse(path).path
        if parsed.startswith("/static/"):
            parsed = parsed[len("/static"):]
        return super().translate_path(parsed)

    def do_GET(self):
        self._dispatch(head_only=False)

    def do_HEAD(self):
        self._dispatch(head_only=True)

    def _dispatch(self, head_only: bool) -> None:
        path = urlparse(self.path).path

        if path == "/":
            self._send_page(head_only)
        elif path == "/health":
            self._send_body(200, b"ok", "text/plain; charset=utf-8", head_only)
        elif path.startswith("/static/") or path in FAVICON_PATHS:
            if os.path.isdir(self.translate_path(self.path)):
                self.send_error(404, "Not Found")
            elif head_only:
                super().do_HEAD()
            else:
                super().do_GET()
        else:
            self.send_error(404, "Not Found")

    def _send_page(self, head_only: bool) -> None:
        page = self.server.page_store.current()
        if page is None:
            self.send_error(503, "Status page not rendered yet")
            return
        self._send_body(
            200,
            page.encode("utf-8"),
            "text/html; charset=utf-8",
            head_only,
            cache_control=f"max-age={CACHE_MAX_AGE}",
        )

    def _send_body(
        self,
        status: int,
        body: bytes,
        content_type: str,
        head_only: bool,
        cache_control: Optional[str] = None,
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        if cache_control:
            self.send_header("Cache-Control", cache_control)
        self.end_headers()
        if not head_only:
            self.wfile.write(body)

    def log_message(self, format, *args):
        """Route access logs through the status page logger."""
        self.server.logger.debug(f"{self.address_string()} - {format % args}")


class StatusPageServer(ThreadingHTTPServer):
    """Threaded HTTP server that tracks in-flight requests for graceful shutdown."""

    daemon_threads = True
    block_on_close = False

    def __init__(
        self,
        server_address: Tuple[str, int],
        page_store: SnapshotStore,
        static_dir: str,
        logger: logging.Logger,
    ) -> None:
        self.page_store = page_store
        self.static_dir = str(static_dir)
        self.logger = logger
        self._inflight = 0
        self._inflight_cond = threading.Condition()
        super().__init__(server_address, StatusPageRequestHandler)

    def process_request(self, request, client_address):
        # Counted on the accept thread so a request accepted right before
        # shutdown is already visible to wait_for_inflight
        with self._inflight_cond:
            self._inflight += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._request_done()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._request_done()

    def _request_done(self) -> None:
        with self._inflight_cond:
            self._inflight -= 1
            self._inflight_cond.notify_all()

    @property
    def inflight(self) -> int:
        with self._inflight_cond:
            return self._inflight

    def wait_for_inflight(self, timeout: float) -> bool:
        """Wait until no request is being handled; False on timeout."""
        with self._inflight_cond:
            return self._inflight_cond.wait_for(
                lambda: self._inflight == 0, timeout=timeout
            )


def serve(app: StatusPageApp, config: Dict[str, Any], logger: logging.Logger) -> int:
    """Serve the status page until a termination signal or a fatal refresh."""
    static_dir = config["server"]["static_dir"]
    if not os.path.isdir(static_dir):
        logger.warning(f"Static directory not found: {static_dir}")

    server = StatusPageServer(
        ("", config["listen"]),
        app.page_store,
        static_dir,
        logger,
    )

    def handle_signal(signum, frame):
        logger.info(f"Signal received ({signal.Signals(signum).name}): now exiting")
        app.shutdown_requested.set()

    previous_handlers = {
        signum: signal.signal(signum, handle_signal)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        app.start_refresh_loops()

        server_thread = threading.Thread(
            target=server.serve_forever, name="http-server", daemon=True
        )
        server_thread.start()
        logger.info(f"Start server on :{server.server_address[1]}")

        # Short waits keep the main thread responsive to signals
        while not app.shutdown_requested.wait(timeout=1.0):
            pass

        app.stop()
        server.shutdown()
        shutdown_timeout = config["intervals"]["shutdown_timeout"]
        if not server.wait_for_inflight(shutdown_timeout):
            logger.warning(
                f"{server.inflight} request(s) still in flight after {shutdown_timeout}s"
            )
    finally:
        app.stop()
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        server.server_close()
        app.close()
    logger.info("Server stopped")

    stats_output = app.stats.format_console_output()
    if stats_output:
        logger.info(stats_output)

    if app.fatal_error is not None:
        logger.error(f"Exiting after fatal refresh error: {app.fatal_error}")
        return 1
    return 0


# =============================================================================
# COMMAND LINE INTERFACE
# =============================================================================


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the command line parser; environment variables provide defaults."""
    parser = argparse.ArgumentParser(
        description="Serve a CI status page for the Terraform modules of a GitHub organization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --listen 8080 --org dcos-terraform --token $GITHUB_TOKEN
  %(prog)s -p 8080 --org dcos-terraform --config configuration/template.config -v
  LISTEN_PORT=8080 GITHUB_ORG=dcos-terraform GITHUB_TOKEN=... %(prog)s --fail-fast
        """,
    )

    # Required (flag or environment)
    parser.add_argument(
        "-p",
        "--listen",
        default=os.environ.get("LISTEN_PORT"),
        help="Port to listen on (env: LISTEN_PORT, required)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("GITHUB_TOKEN"),
        help="GitHub access token (env: GITHUB_TOKEN, required)",
    )
    parser.add_argument(
        "--org",
        default=os.environ.get("GITHUB_ORG"),
        help="GitHub organization (env: GITHUB_ORG, required)",
    )

    # Optional configuration
    parser.add_argument(
        "--config",
        default=os.environ.get("STATUSPAGE_CONFIG"),
        help="YAML configuration file (env: STATUSPAGE_CONFIG)",
    )
    parser.add_argument(
        "--prefix",
        default=os.environ.get("REPO_PREFIX"),
        help=f"Repository name prefix (env: REPO_PREFIX, default: {DEFAULT_CONFIG['prefix']})",
    )
    parser.add_argument(
        "--org-refresh",
        default=os.environ.get("ORG_REFRESH"),
        help="Repository list refresh interval, e.g. 60m (env: ORG_REFRESH, default: 60m)",
    )
    parser.add_argument(
        "--ci-refresh",
        default=os.environ.get("CI_REFRESH"),
        help="Build status refresh interval, e.g. 3m (env: CI_REFRESH, default: 3m)",
    )
    parser.add_argument(
        "--timeout",
        default=os.environ.get("TIMEOUT"),
        help="Graceful shutdown timeout, e.g. 15s or 1m (env: TIMEOUT, default: 15s)",
    )
    parser.add_argument(
        "--jenkins-url",
        default=os.environ.get("JENKINS_URL"),
        help="Jenkins base URL (env: JENKINS_URL)",
    )
    parser.add_argument(
        "--static-dir",
        default=os.environ.get("STATIC_DIR"),
        help="Directory with static assets (env: STATIC_DIR, default: static/ next to this script)",
    )

    # Behavioral options
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Exit on the first failed background refresh instead of keeping the last page",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate configuration, print it and exit",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=_env_int("VERBOSE", 0),
        help="Be verbose (env: VERBOSE)",
    )
    parser.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS),
        help="Override log level from configuration",
    )

    return parser


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_configuration(args)
    except ConfigurationError as e:
        parser.print_usage(sys.stderr)
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    log_config = config["logging"]
    logger = setup_logging(
        level=log_config.get("level", "INFO"),
        include_timestamps=log_config.get("include_timestamps", True),
    )

    logger.info(f"Terraform Status Page v{SCRIPT_VERSION}")
    logger.info(f"Organization: {config['org']} (prefix: {config['prefix']})")
    logger.info(f"Configuration digest: {compute_config_digest(config)[:12]}...")

    if args.validate_only:
        print(json.dumps(redact_config(config), indent=2, default=str))
        return 0

    app = StatusPageApp(config, logger)
    try:
        app.initial_refresh()
    except StatusPageError as e:
        logger.error(f"Initial refresh failed: {e}")
        app.close()
        return 1
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        app.close()
        return 130

    return serve(app, config, logger)


if __name__ == "__main__":
    sys.exit(main())
