#!/usr/bin/env python3
"""
CrowdSec Cloudflare Bouncer - Python Edition

Streams CrowdSec LAPI decisions into a Cloudflare account IP list and keeps
the list in sync. List updates are batched on a timer so a burst of decisions
turns into a handful of deduplicated API calls instead of one call per IP.

Features:
- Stream-based decision polling (startup snapshot, then deltas)
- Deduplicated, batched list item creation and deletion
- IP -> list item ID tracking so unblocks resolve across flush cycles
- Retry with exponential backoff for transient Cloudflare failures
- Optional per-zone firewall rules referencing the list
- Prometheus metrics via Pushgateway

License: MIT
"""

from __future__ import annotations

import argparse
import enum
import ipaddress
import logging
import os
import queue
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import requests
from dotenv import load_dotenv
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

LOGGER_NAME = "cloudflare-bouncer"
USER_AGENT = f"crowdsec-cloudflare-bouncer/{__version__}"

# Annotation stored on every list item the bouncer creates
DEFAULT_COMMENT = "Added by crowdsec-cloudflare-bouncer"


# =============================================================================
# Errors
# =============================================================================

class BouncerError(Exception):
    """Base class for all bouncer errors."""
    pass


class ConfigError(BouncerError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class RemoteError(BouncerError):
    """Raised when a remote API (Cloudflare or CrowdSec LAPI) call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 errors: Optional[list] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class TransientRemoteError(RemoteError):
    """Network, rate-limit or server-side failure. The call may be retried."""
    pass


class FatalRemoteError(RemoteError):
    """Authentication or validation failure. Retrying will not help."""
    pass


# =============================================================================
# Configuration
# =============================================================================

# Valid boolean string values (case-insensitive)
VALID_BOOL_VALUES: set[str] = {"true", "false", "1", "0", "yes", "no", "on", "off"}

VALID_RULE_ACTIONS: set[str] = {
    "block", "challenge", "js_challenge", "managed_challenge", "allow", "log", "bypass",
}

VALID_LOG_LEVELS: set[str] = {"DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL"}

# Cloudflare list names: lowercase letters, digits and underscores, max 50 chars
LIST_NAME_PATTERN = re.compile(r"[a-z0-9_]{1,50}")


def validate_bool_value(var_name: str, value: str) -> tuple[bool, Optional[str]]:
    """
    Validate that a value is a valid boolean string.

    Returns (is_valid, error_message).
    """
    if value.lower() in VALID_BOOL_VALUES:
        return True, None

    return False, (
        f"Invalid value for {var_name}: '{value}'\n"
        f"  Expected one of: true, false, 1, 0, yes, no, on, off (case-insensitive)"
    )


def split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # CrowdSec LAPI settings
    lapi_url: str = "http://localhost:8080"
    lapi_key: str = ""
    lapi_key_file: str = ""
    lapi_update_frequency: int = 10  # seconds between stream polls
    origins: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=lambda: ["ip", "range"])

    # Cloudflare settings
    cf_api_url: str = "https://api.cloudflare.com/client/v4"
    cf_api_token: str = ""
    cf_api_token_file: str = ""
    cf_account_id: str = ""
    cf_zone_ids: list[str] = field(default_factory=list)
    ip_list_name: str = "crowdsec"
    update_frequency: int = 60  # seconds between list flushes
    rule_action: str = "block"
    decision_comment: str = DEFAULT_COMMENT

    # Retry settings
    max_retries: int = 3  # HTTP-level retries per request
    backoff_max: int = 600  # longest wait between failed flushes
    max_retry_age: int = 3600  # give up on a failed batch after this long

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    # Prometheus metrics
    metrics_enabled: bool = False
    pushgateway_url: str = "localhost:9091"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Config":
        """
        Load configuration from environment variables.

        Values from ``env_file`` (or a ``.env`` file found by python-dotenv)
        never override variables already set in the environment.

        Raises ConfigError listing every malformed value, or naming
        ``env_file`` when it does not exist.
        """
        if env_file:
            if not os.path.isfile(env_file):
                raise ConfigError([f"Config file not found: {env_file}"])
            load_dotenv(env_file)
        else:
            load_dotenv()

        problems: list[str] = []

        def get_bool(key: str, default: bool) -> bool:
            raw = os.getenv(key)
            if raw is None:
                return default
            is_valid, error = validate_bool_value(key, raw)
            if not is_valid:
                problems.append(error)
                return default
            return raw.lower() in ("true", "1", "yes", "on")

        def get_int(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or not raw.strip():
                return default
            try:
                return int(raw)
            except ValueError:
                problems.append(f"Invalid value for {key}: '{raw}'\n  Expected an integer")
                return default

        config = cls(
            lapi_url=os.getenv("CROWDSEC_LAPI_URL", "http://localhost:8080").rstrip("/"),
            lapi_key=os.getenv("CROWDSEC_LAPI_KEY", ""),
            lapi_key_file=os.getenv("CROWDSEC_LAPI_KEY_FILE", ""),
            lapi_update_frequency=get_int("CROWDSEC_UPDATE_FREQUENCY", 10),
            origins=split_csv(os.getenv("CROWDSEC_ORIGINS", "")),
            scopes=[s.lower() for s in split_csv(os.getenv("CROWDSEC_SCOPES", "ip,range"))],
            cf_api_url=os.getenv("CLOUDFLARE_API_URL", "https://api.cloudflare.com/client/v4").rstrip("/"),
            cf_api_token=os.getenv("CLOUDFLARE_API_TOKEN", ""),
            cf_api_token_file=os.getenv("CLOUDFLARE_API_TOKEN_FILE", ""),
            cf_account_id=os.getenv("CLOUDFLARE_ACCOUNT_ID", ""),
            cf_zone_ids=split_csv(os.getenv("CLOUDFLARE_ZONE_IDS", "")),
            ip_list_name=os.getenv("CLOUDFLARE_IP_LIST_NAME", "crowdsec"),
            update_frequency=get_int("CLOUDFLARE_UPDATE_FREQUENCY", 60),
            rule_action=os.getenv("CLOUDFLARE_RULE_ACTION", "block").lower(),
            decision_comment=os.getenv("DECISION_COMMENT", DEFAULT_COMMENT),
            max_retries=get_int("MAX_RETRIES", 3),
            backoff_max=get_int("FLUSH_BACKOFF_MAX", 600),
            max_retry_age=get_int("FLUSH_MAX_RETRY_AGE", 3600),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_timestamps=get_bool("LOG_TIMESTAMPS", True),
            metrics_enabled=get_bool("METRICS_ENABLED", False),
            pushgateway_url=os.getenv("METRICS_PUSHGATEWAY_URL", "localhost:9091"),
        )

        if problems:
            raise ConfigError(problems)
        return config

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems: list[str] = []

        if not self.lapi_key:
            problems.append("CrowdSec bouncer key required: set CROWDSEC_LAPI_KEY or CROWDSEC_LAPI_KEY_FILE")
        if not self.cf_api_token:
            problems.append("Cloudflare API token required: set CLOUDFLARE_API_TOKEN or CLOUDFLARE_API_TOKEN_FILE")
        if not self.cf_account_id:
            problems.append("Cloudflare account required: set CLOUDFLARE_ACCOUNT_ID")
        if not LIST_NAME_PATTERN.fullmatch(self.ip_list_name):
            problems.append(
                f"Invalid CLOUDFLARE_IP_LIST_NAME '{self.ip_list_name}': "
                f"use lowercase letters, digits and underscores (max 50 chars)"
            )
        if self.rule_action not in VALID_RULE_ACTIONS:
            problems.append(
                f"Invalid CLOUDFLARE_RULE_ACTION '{self.rule_action}': "
                f"expected one of {', '.join(sorted(VALID_RULE_ACTIONS))}"
            )
        if self.update_frequency <= 0:
            problems.append("CLOUDFLARE_UPDATE_FREQUENCY must be a positive number of seconds")
        if self.lapi_update_frequency <= 0:
            problems.append("CROWDSEC_UPDATE_FREQUENCY must be a positive number of seconds")
        if self.backoff_max <= 0:
            problems.append("FLUSH_BACKOFF_MAX must be a positive number of seconds")
        if self.max_retry_age <= 0:
            problems.append("FLUSH_MAX_RETRY_AGE must be a positive number of seconds")
        if self.max_retries < 0:
            problems.append("MAX_RETRIES must not be negative")
        if self.log_level not in VALID_LOG_LEVELS:
            problems.append(f"Invalid LOG_LEVEL '{self.log_level}'")

        return problems


def read_secret_file(file_path: str) -> str:
    """Read a secret from a file, supporting multiple formats.

    Supports:
    - Docker secrets pattern: single line with just the secret
    - YAML-ish credential files with an 'api_key: <value>' or 'token: <value>' line
    """
    with open(file_path, "r") as f:
        lines = f.readlines()
        if len(lines) == 1:
            return lines[0].strip()
        for line in lines:
            stripped = line.strip()
            for prefix in ("api_key:", "token:"):
                if stripped.startswith(prefix):
                    return stripped.replace(prefix, "", 1).strip()
        return "".join(lines).strip()


def resolve_secrets(config: Config, logger: logging.Logger) -> None:
    """Read secrets from *_FILE paths. _FILE takes precedence over direct values."""
    problems: list[str] = []
    if config.lapi_key_file:
        try:
            config.lapi_key = read_secret_file(config.lapi_key_file)
            logger.debug(f"Read LAPI key from {config.lapi_key_file}")
        except OSError as e:
            problems.append(f"Cannot read CROWDSEC_LAPI_KEY_FILE '{config.lapi_key_file}': {e}")
    if config.cf_api_token_file:
        try:
            config.cf_api_token = read_secret_file(config.cf_api_token_file)
            logger.debug(f"Read Cloudflare API token from {config.cf_api_token_file}")
        except OSError as e:
            problems.append(f"Cannot read CLOUDFLARE_API_TOKEN_FILE '{config.cf_api_token_file}': {e}")
    if problems:
        raise ConfigError(problems)


# =============================================================================
# Decisions
# =============================================================================

class DecisionKind(enum.Enum):
    NEW = "new"
    DELETED = "deleted"


@dataclass(frozen=True)
class Decision:
    """A single block / unblock instruction received from CrowdSec."""
    value: str
    kind: DecisionKind
    scope: str = "Ip"
    type: str = "ban"
    origin: str = ""

    @classmethod
    def from_lapi(cls, payload: dict, kind: DecisionKind) -> "Decision":
        return cls(
            value=str(payload.get("value") or ""),
            kind=kind,
            scope=payload.get("scope") or "Ip",
            type=payload.get("type") or "ban",
            origin=payload.get("origin") or "",
        )


@dataclass
class DecisionBatch:
    """One delivery from the decision stream."""
    new: list[Decision] = field(default_factory=list)
    deleted: list[Decision] = field(default_factory=list)

    @classmethod
    def from_stream(cls, payload: Optional[dict]) -> "DecisionBatch":
        """Build a batch from a LAPI stream response. ``null`` lists count as empty."""
        payload = payload or {}
        return cls(
            new=[Decision.from_lapi(d, DecisionKind.NEW) for d in payload.get("new") or []],
            deleted=[Decision.from_lapi(d, DecisionKind.DELETED) for d in payload.get("deleted") or []],
        )

    @property
    def is_empty(self) -> bool:
        return not self.new and not self.deleted


def normalize_ip(value: str) -> Optional[str]:
    """
    Normalize an IP address or CIDR network.

    Single-address networks (``/32``, ``/128``) collapse to the bare address.
    Returns None if the value is not an IP or network.
    """
    value = value.strip()
    if not value:
        return None

    try:
        if "/" in value:
            network = ipaddress.ip_network(value, strict=False)
            if network.num_addresses == 1:
                return str(network.network_address)
            return str(network)
        return str(ipaddress.ip_address(value))
    except (ValueError, TypeError):
        return None


# =============================================================================
# Reconciliation State
# =============================================================================

@dataclass(frozen=True, order=True)
class PendingAdd:
    """List item waiting to be created. Deduplicated on (ip, comment)."""
    ip: str
    comment: str


@dataclass(frozen=True, order=True)
class PendingDelete:
    """List item waiting to be deleted. Deduplicated on remote_id."""
    remote_id: str


@dataclass
class CollectStats:
    """What happened to the decisions of one stream batch."""
    adds: int = 0
    deletes: int = 0
    cancelled: int = 0  # delete cancelled a not-yet-flushed add
    deferred: int = 0  # delete waits for an in-flight add to be confirmed
    ignored: int = 0  # delete for an IP the list never contained
    invalid: int = 0


@dataclass
class StateSnapshot:
    pending_adds: int
    pending_deletes: int
    indexed: int
    in_flight: int


class ReconciliationState:
    """
    Pending adds, pending deletes and the IP -> list item ID index.

    Shared between the stream collector (writer) and the flush scheduler
    (drainer). Every operation runs under one lock; remote calls never do.

    Within a single uncommitted window the last decision for an IP wins:
    a delete cancels a pending add for the same IP, and a delete for an IP
    whose add is currently being created is replayed once the create
    returns its list item ID.
    """

    def __init__(self, comment: str = DEFAULT_COMMENT, logger: Optional[logging.Logger] = None):
        self.comment = comment
        self._logger = logger or logging.getLogger(LOGGER_NAME)
        self._lock = threading.Lock()
        self._pending_adds: set[PendingAdd] = set()
        self._pending_deletes: set[PendingDelete] = set()
        self._ip_index: dict[str, str] = {}
        self._in_flight: set[str] = set()
        self._deferred_deletes: set[str] = set()

    def record_decisions(self, batch: DecisionBatch) -> CollectStats:
        """Fold one stream batch into the pending sets. Makes no remote call."""
        stats = CollectStats()
        with self._lock:
            for decision in batch.deleted:
                ip = normalize_ip(decision.value)
                if ip is None:
                    stats.invalid += 1
                    self._logger.debug(f"Skipping deleted decision with invalid value '{decision.value}'")
                    continue

                if ip in self._in_flight:
                    self._deferred_deletes.add(ip)
                    stats.deferred += 1

                remote_id = self._ip_index.pop(ip, None)
                if remote_id is not None:
                    self._pending_deletes.add(PendingDelete(remote_id))
                    stats.deletes += 1
                    continue

                pending = PendingAdd(ip, self.comment)
                if pending in self._pending_adds:
                    self._pending_adds.discard(pending)
                    stats.cancelled += 1
                elif ip not in self._in_flight:
                    stats.ignored += 1
                    self._logger.debug(f"No list item for {ip}, nothing to delete")

            for decision in batch.new:
                ip = normalize_ip(decision.value)
                if ip is None:
                    stats.invalid += 1
                    self._logger.debug(f"Skipping new decision with invalid value '{decision.value}'")
                    continue
                self._pending_adds.add(PendingAdd(ip, self.comment))
                stats.adds += 1

        return stats

    def drain_for_flush(self) -> tuple[list[PendingAdd], list[PendingDelete]]:
        """Snapshot and reset both pending sets in one step.

        The returned adds stay "in flight" until confirm_adds(), requeue() or
        abandon() is called for them.
        """
        with self._lock:
            adds = sorted(self._pending_adds)
            deletes = sorted(self._pending_deletes)
            self._pending_adds = set()
            self._pending_deletes = set()
            self._in_flight.update(add.ip for add in adds)
        return adds, deletes

    def confirm_adds(self, pairs: Iterable[tuple[str, str]],
                     attempted: Iterable[PendingAdd] = ()) -> int:
        """
        Record list item IDs returned by a successful create.

        IPs deleted while their create was in flight are not indexed; their
        new item ID is queued for deletion instead. Returns the number of
        such replayed deletes.
        """
        replayed = 0
        with self._lock:
            for ip, remote_id in pairs:
                if ip in self._deferred_deletes:
                    self._deferred_deletes.discard(ip)
                    self._pending_deletes.add(PendingDelete(remote_id))
                    replayed += 1
                    continue
                self._ip_index[ip] = remote_id
                self._in_flight.discard(ip)

            for add in attempted:
                self._in_flight.discard(add.ip)
                self._deferred_deletes.discard(add.ip)
        return replayed

    def requeue(self, adds: Iterable[PendingAdd], deletes: Iterable[PendingDelete]) -> None:
        """Merge a failed batch back into the pending sets for the next flush."""
        with self._lock:
            for add in adds:
                self._in_flight.discard(add.ip)
                if add.ip in self._deferred_deletes:
                    # deleted while in flight: the add is superseded
                    self._deferred_deletes.discard(add.ip)
                    continue
                self._pending_adds.add(add)
            self._pending_deletes.update(deletes)

    def abandon(self, adds: Iterable[PendingAdd]) -> None:
        """Release in-flight adds that will not be retried."""
        with self._lock:
            for add in adds:
                self._in_flight.discard(add.ip)
                self._deferred_deletes.discard(add.ip)

    def remote_id_for(self, ip: str) -> Optional[str]:
        with self._lock:
            return self._ip_index.get(ip)

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                pending_adds=len(self._pending_adds),
                pending_deletes=len(self._pending_deletes),
                indexed=len(self._ip_index),
                in_flight=len(self._in_flight),
            )


# =============================================================================
# Prometheus Metrics
# =============================================================================

# Fixed-category error labels. Raw exception strings must never become label
# values: each unique string would create a new time series.
_ERROR_PATTERNS: list[tuple[str, str]] = [
    ("ConnectionError",         "connection_error"),
    ("ConnectTimeout",          "connect_timeout"),
    ("ReadTimeout",             "read_timeout"),
    ("Timeout",                 "timeout"),
    ("SSLError",                "ssl_error"),
    ("RetryError",              "retries_exhausted"),
    ("401",                     "http_401"),
    ("403",                     "http_403"),
    ("404",                     "http_404"),
    ("429",                     "http_429"),
    ("500",                     "http_500"),
    ("502",                     "http_502"),
    ("503",                     "http_503"),
    ("504",                     "http_504"),
    ("HTTPError",               "http_error"),
    ("bulk operation",          "bulk_operation"),
    ("JSONDecodeError",         "json_decode_error"),
]

KNOWN_STATUS_CODES: set[int] = {401, 403, 404, 429, 500, 502, 503, 504}


def sanitize_error_message(exc: Exception) -> str:
    """
    Convert an exception into a fixed-category string safe for use as a
    Prometheus label value.

    Returns the first matching category, or the exception class name as a
    stable fallback. Never returns the raw str(exc).
    """
    exc_type = type(exc).__name__
    exc_str = str(exc)

    # Request paths carry account and list IDs, so never scan them for codes
    status_code = getattr(exc, "status_code", None)
    if status_code:
        if status_code in KNOWN_STATUS_CODES:
            return f"http_{status_code}"
        return "http_error"

    for pattern, category in _ERROR_PATTERNS:
        if pattern in exc_type or pattern in exc_str:
            return category

    return exc_type[:64]


class MetricsCollector:
    """
    Prometheus metrics for the bouncer, pushed to a Pushgateway after every
    flush.

      - cloudflare_bouncer_pending_adds / _pending_deletes
      - cloudflare_bouncer_indexed_ips         items known to be on the list
      - cloudflare_bouncer_last_flush_added / _deleted
      - cloudflare_bouncer_last_flush_timestamp
      - cloudflare_bouncer_errors_total{operation, message}
      - cloudflare_bouncer_flush_duration_seconds (histogram)
    """

    def __init__(self, pushgateway_url: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.pushgateway_url = pushgateway_url
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.registry = CollectorRegistry()

        self.pending_adds = Gauge(
            "cloudflare_bouncer_pending_adds",
            "IPs waiting to be added to the Cloudflare list",
            registry=self.registry,
        )
        self.pending_deletes = Gauge(
            "cloudflare_bouncer_pending_deletes",
            "List items waiting to be deleted from the Cloudflare list",
            registry=self.registry,
        )
        self.indexed_ips = Gauge(
            "cloudflare_bouncer_indexed_ips",
            "IPs currently known to be on the Cloudflare list",
            registry=self.registry,
        )
        self.last_flush_added = Gauge(
            "cloudflare_bouncer_last_flush_added",
            "List items created by the last flush",
            registry=self.registry,
        )
        self.last_flush_deleted = Gauge(
            "cloudflare_bouncer_last_flush_deleted",
            "List items deleted by the last flush",
            registry=self.registry,
        )
        self.last_flush_timestamp = Gauge(
            "cloudflare_bouncer_last_flush_timestamp",
            "Unix timestamp of the last flush",
            registry=self.registry,
        )
        self.errors_total = Counter(
            "cloudflare_bouncer_errors",
            "Remote call failures labelled by operation and sanitized message category",
            ["operation", "message"],
            registry=self.registry,
        )
        self.flush_duration_seconds = Histogram(
            "cloudflare_bouncer_flush_duration_seconds",
            "Duration of a flush in seconds",
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=self.registry,
        )

    def record_error(self, operation: str, exc: Exception) -> None:
        self.errors_total.labels(operation=operation, message=sanitize_error_message(exc)).inc()

    def record_flush(self, result: "FlushResult", snapshot: StateSnapshot) -> None:
        """Update gauges at the end of a flush."""
        self.pending_adds.set(snapshot.pending_adds)
        self.pending_deletes.set(snapshot.pending_deletes)
        self.indexed_ips.set(snapshot.indexed)
        self.last_flush_added.set(result.added)
        self.last_flush_deleted.set(result.deleted)
        self.last_flush_timestamp.set(time.time())
        self.flush_duration_seconds.observe(result.duration)

    def push(self) -> bool:
        """Push all metrics to the Pushgateway. Failures are logged, never raised."""
        if not self.pushgateway_url:
            return False
        try:
            push_to_gateway(
                self.pushgateway_url,
                job="crowdsec-cloudflare-bouncer",
                registry=self.registry,
            )
            self.logger.debug(f"Metrics pushed to Pushgateway at {self.pushgateway_url}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False


# =============================================================================
# HTTP Client with Retry
# =============================================================================

def create_http_session(max_retries: int = 3) -> requests.Session:
    """Create an HTTP session with retry logic."""
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,  # 1s, 2s, 4s...
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET", "POST", "DELETE"],
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


# =============================================================================
# Cloudflare API Client
# =============================================================================

def _format_cf_errors(errors: list) -> str:
    parts = []
    for error in errors:
        if isinstance(error, dict):
            parts.append(f"[{error.get('code', '?')}] {error.get('message', '')}".strip())
        else:
            parts.append(str(error))
    return "; ".join(parts)


class CloudflareAPI:
    """Cloudflare v4 API client for account IP lists and zone firewall rules.

    List item writes are asynchronous on Cloudflare's side: each create or
    delete returns a bulk operation ID which is polled until it completes.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        account_id: str,
        session: requests.Session,
        logger: logging.Logger,
        timeout: int = 60,
        operation_timeout: float = 120.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self.session = session
        self.logger = logger
        self.timeout = timeout
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    @property
    def _lists_path(self) -> str:
        return f"/accounts/{self.account_id}/rules/lists"

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """
        Perform a request and return the decoded response envelope.

        Raises TransientRemoteError for transport failures, 429 and 5xx;
        FatalRemoteError for any other non-success response.
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=self.headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise TransientRemoteError(f"{method} {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = {}
        errors = data.get("errors") or []
        detail = _format_cf_errors(errors) or response.text[:200]

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientRemoteError(f"{method} {path} returned {status}: {detail}", status, errors)
        if status >= 400 or not data.get("success", False):
            raise FatalRemoteError(f"{method} {path} returned {status}: {detail}", status, errors)
        return data

    # ------------------------------------------------------------------
    # IP lists
    # ------------------------------------------------------------------

    def list_ip_lists(self) -> list[dict]:
        return self._request("GET", self._lists_path).get("result") or []

    def create_ip_list(self, name: str, description: str) -> dict:
        data = self._request(
            "POST",
            self._lists_path,
            json={"name": name, "kind": "ip", "description": description},
        )
        return data.get("result") or {}

    def delete_ip_list(self, list_id: str) -> None:
        self._request("DELETE", f"{self._lists_path}/{list_id}")

    def list_items(self, list_id: str, per_page: int = 500) -> list[dict]:
        """Return every item on a list, following cursor pagination."""
        items: list[dict] = []
        params: dict = {"per_page": per_page}
        while True:
            data = self._request("GET", f"{self._lists_path}/{list_id}/items", params=params)
            items.extend(data.get("result") or [])
            cursors = (data.get("result_info") or {}).get("cursors") or {}
            after = cursors.get("after")
            if not after:
                return items
            params = {"per_page": per_page, "cursor": after}

    def create_list_items(self, list_id: str, items: list[PendingAdd]) -> list[tuple[str, str]]:
        """
        Add items to a list and return (ip, item_id) pairs for the requested IPs.

        Cloudflare does not return item IDs from the create call, so once the
        bulk operation completes the list is read back to resolve them.
        """
        if not items:
            return []

        data = self._request(
            "POST",
            f"{self._lists_path}/{list_id}/items",
            json=[{"ip": item.ip, "comment": item.comment} for item in items],
        )
        self.wait_for_operation((data.get("result") or {}).get("operation_id"))

        wanted = {item.ip for item in items}
        pairs: list[tuple[str, str]] = []
        for entry in self.list_items(list_id):
            raw_ip = entry.get("ip") or ""
            ip = normalize_ip(raw_ip) or raw_ip
            if ip in wanted and entry.get("id"):
                pairs.append((ip, entry["id"]))
        return pairs

    def delete_list_items(self, list_id: str, items: list[PendingDelete]) -> None:
        if not items:
            return

        data = self._request(
            "DELETE",
            f"{self._lists_path}/{list_id}/items",
            json={"items": [{"id": item.remote_id} for item in items]},
        )
        self.wait_for_operation((data.get("result") or {}).get("operation_id"))

    def wait_for_operation(self, operation_id: Optional[str]) -> None:
        """Poll a list bulk operation until it completes."""
        if not operation_id:
            return

        deadline = time.monotonic() + self.operation_timeout
        path = f"/accounts/{self.account_id}/rules/lists/bulk_operations/{operation_id}"
        while True:
            result = self._request("GET", path).get("result") or {}
            status = result.get("status")
            if status == "completed":
                return
            if status == "failed":
                raise FatalRemoteError(
                    f"bulk operation {operation_id} failed: {result.get('error', 'unknown error')}"
                )
            if time.monotonic() >= deadline:
                raise TransientRemoteError(
                    f"bulk operation {operation_id} still {status} after {self.operation_timeout:.0f}s"
                )
            self._sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Zone firewall rules
    # ------------------------------------------------------------------

    def list_firewall_rules(self, zone_id: str, per_page: int = 100) -> list[dict]:
        """Return every firewall rule of a zone, following page pagination."""
        rules: list[dict] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                f"/zones/{zone_id}/firewall/rules",
                params={"page": page, "per_page": per_page},
            )
            rules.extend(data.get("result") or [])
            total_pages = (data.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                return rules
            page += 1

    def create_firewall_rules(self, zone_id: str, rules: list[dict]) -> list[dict]:
        return self._request("POST", f"/zones/{zone_id}/firewall/rules", json=rules).get("result") or []

    def delete_firewall_rule(self, zone_id: str, rule_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/firewall/rules/{rule_id}")

    def delete_filter(self, zone_id: str, filter_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/filters/{filter_id}")


def list_expression(list_name: str) -> str:
    return f"ip.src in ${list_name}"


def setup_ip_list_and_firewall(api: CloudflareAPI, config: Config, logger: logging.Logger) -> str:
    """
    Create a fresh IP list (and per-zone firewall rules) and return its ID.

    The IP index lives in memory only, so a list left over from a previous
    run is removed together with the rules that reference it.
    """
    expression = list_expression(config.ip_list_name)
    reference = f"${config.ip_list_name}"

    for existing in api.list_ip_lists():
        if existing.get("name") != config.ip_list_name:
            continue

        logger.info(f"Removing existing IP list '{config.ip_list_name}' ({existing.get('id')})")
        for zone_id in config.cf_zone_ids:
            for rule in api.list_firewall_rules(zone_id):
                rule_filter = rule.get("filter") or {}
                if reference not in (rule_filter.get("expression") or ""):
                    continue
                logger.debug(f"Deleting firewall rule {rule.get('id')} in zone {zone_id}")
                api.delete_firewall_rule(zone_id, rule["id"])
                if rule_filter.get("id"):
                    api.delete_filter(zone_id, rule_filter["id"])
        api.delete_ip_list(existing["id"])

    created = api.create_ip_list(
        config.ip_list_name,
        f"IPs blocked by CrowdSec (managed by crowdsec-cloudflare-bouncer v{__version__})",
    )
    list_id = created.get("id")
    if not list_id:
        raise FatalRemoteError(f"Cloudflare did not return an ID for list '{config.ip_list_name}'")
    logger.info(f"Created IP list '{config.ip_list_name}' ({list_id})")

    for zone_id in config.cf_zone_ids:
        api.create_firewall_rules(zone_id, [{
            "filter": {"expression": expression},
            "action": config.rule_action,
            "description": "CrowdSec blocklist",
        }])
        logger.info(f"Created firewall rule '{expression}' ({config.rule_action}) in zone {zone_id}")

    return list_id


# =============================================================================
# Flush Scheduler
# =============================================================================

class FlushOutcome(enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass
class FlushResult:
    outcome: FlushOutcome = FlushOutcome.SUCCESS
    added: int = 0
    deleted: int = 0
    requeued_adds: int = 0
    requeued_deletes: int = 0
    dropped: int = 0
    duration: float = 0.0
    error: Optional[Exception] = None


def classify_error(exc: Exception) -> FlushOutcome:
    if isinstance(exc, TransientRemoteError):
        return FlushOutcome.RETRY
    return FlushOutcome.FATAL


@dataclass
class RetryPolicy:
    """Exponential backoff between failed flushes, bounded by age."""
    base_delay: float = 60.0
    max_delay: float = 600.0
    max_age: float = 3600.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))


class FlushScheduler:
    """
    Drains the reconciliation state on a fixed interval and applies it to the
    Cloudflare list.

    Deletes go out before adds, so an IP unblocked and re-blocked within one
    window ends up with a fresh list item, and an IP is never left on the
    list after its unblock was processed. If the delete call fails the adds
    of that cycle are held back as well.
    """

    def __init__(
        self,
        state: ReconciliationState,
        api: CloudflareAPI,
        list_id: str,
        interval: float,
        logger: logging.Logger,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.api = api
        self.list_id = list_id
        self.interval = interval
        self.logger = logger
        self.retry_policy = retry_policy or RetryPolicy(base_delay=interval)
        self.metrics = metrics
        self._clock = clock
        self.failures = 0
        self._first_failure_at: Optional[float] = None
        self._next_attempt_at: float = 0.0

    def run(self, stop_event: threading.Event) -> None:
        """Flush every ``interval`` seconds until stopped. Fatal errors propagate."""
        self.logger.info(f"Flushing to Cloudflare every {self.interval}s")
        while not stop_event.wait(self.interval):
            result = self.tick()
            if result is not None and result.outcome is FlushOutcome.FATAL:
                raise result.error

    def tick(self) -> Optional[FlushResult]:
        """Flush unless still backing off from a failure. Returns None when skipped."""
        now = self._clock()
        if now < self._next_attempt_at:
            self.logger.debug(f"Backing off, next flush attempt in {self._next_attempt_at - now:.0f}s")
            return None
        return self.flush_once()

    def flush_once(self) -> FlushResult:
        t0 = time.time()
        result = FlushResult()
        adds, deletes = self.state.drain_for_flush()
        if not adds and not deletes:
            # gauges and the last-flush timestamp still refresh on an idle tick
            return self._finish(result, t0)

        if deletes:
            self.logger.info(f"making API call to cloudflare to delete '{len(deletes)}' decisions")
            try:
                self.api.delete_list_items(self.list_id, deletes)
            except RemoteError as e:
                return self._failed("delete", e, adds, deletes, result, t0)
            result.deleted = len(deletes)

        if adds:
            self.logger.info(f"making API call to cloudflare for adding '{len(adds)}' decisions")
            try:
                pairs = self.api.create_list_items(self.list_id, adds)
            except RemoteError as e:
                return self._failed("create", e, adds, [], result, t0)
            replayed = self.state.confirm_adds(pairs, attempted=adds)
            result.added = len(pairs)
            if len(pairs) < len(adds):
                self.logger.warning(
                    f"Cloudflare confirmed {len(pairs)} of {len(adds)} added IPs"
                )
            if replayed:
                self.logger.debug(f"{replayed} IPs were unblocked while being added, queued for deletion")

        self.failures = 0
        self._first_failure_at = None
        self._next_attempt_at = 0.0
        return self._finish(result, t0)

    def _failed(self, operation: str, exc: RemoteError, adds: list[PendingAdd],
                deletes: list[PendingDelete], result: FlushResult, t0: float) -> FlushResult:
        result.outcome = classify_error(exc)
        result.error = exc
        if self.metrics:
            self.metrics.record_error(operation, exc)

        if result.outcome is FlushOutcome.FATAL:
            self.logger.error(f"Cloudflare {operation} failed: {exc}")
            self.state.abandon(adds)
            return self._finish(result, t0)

        now = self._clock()
        self.failures += 1
        if self._first_failure_at is None:
            self._first_failure_at = now

        age = now - self._first_failure_at
        if age >= self.retry_policy.max_age:
            result.dropped = len(adds) + len(deletes)
            self.logger.error(
                f"Cloudflare {operation} failing for {age:.0f}s ({self.failures} attempts), "
                f"dropping {len(adds)} adds and {len(deletes)} deletes: {exc}"
            )
            self.state.abandon(adds)
            self.failures = 0
            self._first_failure_at = None
            self._next_attempt_at = 0.0
            return self._finish(result, t0)

        self.state.requeue(adds, deletes)
        result.requeued_adds = len(adds)
        result.requeued_deletes = len(deletes)
        delay = self.retry_policy.delay(self.failures)
        self._next_attempt_at = now + delay
        self.logger.warning(
            f"Cloudflare {operation} failed (attempt {self.failures}), "
            f"retrying in {delay:.0f}s: {exc}"
        )
        return self._finish(result, t0)

    def _finish(self, result: FlushResult, t0: float) -> FlushResult:
        result.duration = time.time() - t0
        if self.metrics:
            self.metrics.record_flush(result, self.state.snapshot())
            self.metrics.push()
        return result


# =============================================================================
# CrowdSec LAPI Decision Stream
# =============================================================================

class StreamBouncer:
    """Polls the CrowdSec LAPI decision stream with a bouncer API key.

    The first successful poll asks for the full set of active decisions
    (``startup=true``); later polls only return what changed since.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: requests.Session,
        logger: logging.Logger,
        interval: float = 10,
        scopes: Optional[list[str]] = None,
        origins: Optional[list[str]] = None,
        timeout: int = 120,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.logger = logger
        self.interval = interval
        self.scopes = scopes or []
        self.origins = origins or []
        self.timeout = timeout
        self._startup = True
        self.headers = {
            "X-Api-Key": api_key,
            "User-Agent": USER_AGENT,
        }

    def health_check(self) -> bool:
        """Check if LAPI is accessible."""
        try:
            response = self.session.get(
                f"{self.base_url}/v1/decisions",
                headers=self.headers,
                timeout=10,
                params={"limit": 1},
            )
            # 200 = OK, 403 = unauthorized but reachable
            return response.status_code in (200, 403)
        except requests.RequestException as e:
            self.logger.error(f"LAPI health check failed: {e}")
            return False

    def get_decisions_stream(self, startup: bool = False) -> dict:
        """Get decisions from stream endpoint."""
        params = {"startup": "true" if startup else "false"}
        if self.scopes:
            params["scopes"] = ",".join(self.scopes)
        if self.origins:
            params["origins"] = ",".join(self.origins)

        url = f"{self.base_url}/v1/decisions/stream"
        self.logger.debug(f"Fetching decisions from {url} with params {params}")

        response = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
        if response.status_code in (401, 403):
            raise FatalRemoteError(
                f"LAPI rejected the bouncer key ({response.status_code})", response.status_code
            )
        response.raise_for_status()
        return response.json() or {}

    def poll(self) -> DecisionBatch:
        batch = DecisionBatch.from_stream(self.get_decisions_stream(startup=self._startup))
        self._startup = False
        return batch

    def run(self, stream: queue.Queue, stop_event: threading.Event) -> None:
        """Poll until stopped, putting non-empty batches on ``stream``."""
        consecutive_errors = 0
        max_consecutive_errors = 10

        while not stop_event.is_set():
            try:
                batch = self.poll()
            except (requests.RequestException, ValueError) as e:
                consecutive_errors += 1
                self.logger.error(
                    f"Stream update failed ({consecutive_errors}/{max_consecutive_errors}): {e}"
                )
                if consecutive_errors >= max_consecutive_errors:
                    self.logger.critical(
                        f"Too many consecutive errors ({consecutive_errors}), "
                        "consider checking CrowdSec connectivity"
                    )
            else:
                consecutive_errors = 0
                if not batch.is_empty:
                    self.logger.debug(
                        f"Stream update: +{len(batch.new)} new, -{len(batch.deleted)} deleted decisions"
                    )
                    stream.put(batch)

            if stop_event.wait(self.interval):
                break


def collect_stream(stream: queue.Queue, state: ReconciliationState,
                   stop_event: threading.Event, logger: logging.Logger) -> None:
    """Fold stream batches into the reconciliation state until stopped."""
    while not stop_event.is_set():
        try:
            batch = stream.get(timeout=1.0)
        except queue.Empty:
            continue

        logger.debug("processing new and deleted decisions from crowdsec LAPI")
        stats = state.record_decisions(batch)
        logger.info(
            f"Collected {stats.adds} adds and {stats.deletes} deletes"
            + (f", {stats.cancelled} cancelled" if stats.cancelled else "")
            + (f", {stats.deferred} deferred" if stats.deferred else "")
            + (f", {stats.ignored} unknown IPs ignored" if stats.ignored else "")
            + (f", {stats.invalid} invalid values" if stats.invalid else "")
        )


# =============================================================================
# Daemon
# =============================================================================

class Daemon:
    """Runs the stream poller, the collector and the flush scheduler.

    A fatal error in any of the three stops the others; run() then returns 1.
    """

    def __init__(
        self,
        lapi: StreamBouncer,
        scheduler: FlushScheduler,
        logger: logging.Logger,
    ):
        self.lapi = lapi
        self.scheduler = scheduler
        self.state = scheduler.state
        self.logger = logger
        self.stream: queue.Queue = queue.Queue()
        self.stop_event = threading.Event()
        self.errors: list[BaseException] = []
        self._threads: list[threading.Thread] = []

    def _spawn(self, name: str, target: Callable, *args) -> threading.Thread:
        def _runner():
            try:
                target(*args)
            except Exception as e:
                self.logger.error(f"{name} stopped: {e}")
                self.errors.append(e)
                self.stop_event.set()

        thread = threading.Thread(target=_runner, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)
        return thread

    def stop(self) -> None:
        self.stop_event.set()

    def run(self) -> int:
        self._spawn("stream", self.lapi.run, self.stream, self.stop_event)
        self._spawn("collector", collect_stream, self.stream, self.state, self.stop_event, self.logger)
        self._spawn("flush", self.scheduler.run, self.stop_event)

        # Wake up regularly so signal handlers run promptly
        while not self.stop_event.wait(1.0):
            pass

        for thread in self._threads:
            thread.join(timeout=5)

        snapshot = self.state.snapshot()
        if snapshot.pending_adds or snapshot.pending_deletes:
            self.logger.info(
                f"Dropping {snapshot.pending_adds} pending adds and "
                f"{snapshot.pending_deletes} pending deletes"
            )

        if self.errors:
            return 1
        self.logger.info("Daemon stopped")
        return 0


def install_signal_handlers(daemon: Daemon, logger: logging.Logger) -> None:
    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        daemon.stop()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


# =============================================================================
# CLI
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure logging with structured output."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    formatter = logging.Formatter(
        format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.handlers = [handler]
    return logger


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Sync CrowdSec decisions into a Cloudflare IP list",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CROWDSEC_LAPI_URL             CrowdSec LAPI URL (default: http://localhost:8080)
  CROWDSEC_LAPI_KEY[_FILE]      Bouncer API key / key file (required)
  CROWDSEC_UPDATE_FREQUENCY     Seconds between decision stream polls (default: 10)
  CROWDSEC_ORIGINS              Only sync decisions from these origins (comma separated)
  CROWDSEC_SCOPES               Decision scopes to sync (default: ip,range)
  CLOUDFLARE_API_TOKEN[_FILE]   Cloudflare API token / token file (required)
  CLOUDFLARE_ACCOUNT_ID         Cloudflare account owning the IP list (required)
  CLOUDFLARE_ZONE_IDS           Zones to protect with a firewall rule (comma separated)
  CLOUDFLARE_IP_LIST_NAME       Name of the IP list (default: crowdsec)
  CLOUDFLARE_UPDATE_FREQUENCY   Seconds between list updates (default: 60)
  CLOUDFLARE_RULE_ACTION        Firewall rule action (default: block)
  DECISION_COMMENT              Comment stored on list items
  FLUSH_BACKOFF_MAX             Longest wait between failed list updates (default: 600)
  FLUSH_MAX_RETRY_AGE           Drop a failing batch after this many seconds (default: 3600)
  LOG_LEVEL                     DEBUG, INFO, WARN, ERROR (default: INFO)
  METRICS_ENABLED               Push Prometheus metrics (default: false)
  METRICS_PUSHGATEWAY_URL       Pushgateway address (default: localhost:9091)

Examples:
  # Run as a daemon
  CROWDSEC_LAPI_KEY=key CLOUDFLARE_API_TOKEN=token CLOUDFLARE_ACCOUNT_ID=acc ./cloudflare_bouncer.py

  # Load settings from a file
  ./cloudflare_bouncer.py -c /etc/crowdsec/bouncers/cloudflare.env

  # Validate configuration without running
  ./cloudflare_bouncer.py --validate
""",
    )

    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c", "--env-file",
        help="Path to a dotenv file with configuration",
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--lapi-url",
        help="CrowdSec LAPI URL (overrides CROWDSEC_LAPI_URL)",
    )

    parser.add_argument(
        "--update-frequency",
        type=int,
        metavar="SECONDS",
        help="Seconds between Cloudflare list updates (overrides CLOUDFLARE_UPDATE_FREQUENCY)",
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration and exit",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Poll the decision stream once, flush, and exit",
    )

    parser.add_argument(
        "--pushgateway-url",
        help="Push URL for Prometheus (overrides METRICS_PUSHGATEWAY_URL)",
    )

    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Disable Prometheus metrics",
    )

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Config:
    """Load config from the environment and apply CLI overrides."""
    config = Config.from_env(args.env_file)

    if args.debug:
        config.log_level = "DEBUG"
    if args.lapi_url:
        config.lapi_url = args.lapi_url.rstrip("/")
    if args.update_frequency is not None:
        config.update_frequency = args.update_frequency
    if args.pushgateway_url:
        config.pushgateway_url = args.pushgateway_url
    if args.no_metrics:
        config.metrics_enabled = False

    return config


def build_clients(config: Config, logger: logging.Logger) -> tuple[CloudflareAPI, StreamBouncer]:
    """Cloudflare and LAPI clients, each on its own session since they run on separate threads."""
    api = CloudflareAPI(
        base_url=config.cf_api_url,
        api_token=config.cf_api_token,
        account_id=config.cf_account_id,
        session=create_http_session(config.max_retries),
        logger=logger,
    )
    lapi = StreamBouncer(
        base_url=config.lapi_url,
        api_key=config.lapi_key,
        session=create_http_session(config.max_retries),
        logger=logger,
        interval=config.lapi_update_frequency,
        scopes=config.scopes,
        origins=config.origins,
    )
    return api, lapi


def build_scheduler(config: Config, api: CloudflareAPI, list_id: str, logger: logging.Logger,
                    metrics: Optional[MetricsCollector] = None) -> FlushScheduler:
    state = ReconciliationState(comment=config.decision_comment, logger=logger)
    return FlushScheduler(
        state=state,
        api=api,
        list_id=list_id,
        interval=config.update_frequency,
        logger=logger,
        retry_policy=RetryPolicy(
            base_delay=config.update_frequency,
            max_delay=config.backoff_max,
            max_age=config.max_retry_age,
        ),
        metrics=metrics,
    )


def run_once(lapi: StreamBouncer, scheduler: FlushScheduler, logger: logging.Logger) -> int:
    """Single stream poll followed by a single flush."""
    batch = lapi.poll()
    stats = scheduler.state.record_decisions(batch)
    logger.info(f"Collected {stats.adds} adds and {stats.deletes} deletes")
    result = scheduler.flush_once()
    if result.outcome is not FlushOutcome.SUCCESS:
        logger.error(f"Flush did not complete: {result.error}")
        return 1
    logger.info(f"Added {result.added} and deleted {result.deleted} list items")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args)
    except ConfigError as e:
        logger = setup_logging(Config())
        logger.error("Configuration validation failed:")
        for problem in e.problems:
            for line in problem.split("\n"):
                logger.error(line)
        return 1

    logger = setup_logging(config)
    logger.info(f"CrowdSec Cloudflare Bouncer v{__version__}")

    try:
        resolve_secrets(config, logger)
        problems = config.validate()
        if problems:
            raise ConfigError(problems)
    except ConfigError as e:
        logger.error("Configuration validation failed:")
        for problem in e.problems:
            for line in problem.split("\n"):
                logger.error(f"  {line}")
        return 1

    if args.validate:
        logger.info("Configuration validation passed!")
        return 0

    api, lapi = build_clients(config, logger)

    metrics = None
    if config.metrics_enabled:
        metrics = MetricsCollector(pushgateway_url=config.pushgateway_url, logger=logger)

    try:
        if not lapi.health_check():
            logger.error("Cannot connect to CrowdSec LAPI")
            return 1
        logger.info("Connected to CrowdSec LAPI")

        list_id = setup_ip_list_and_firewall(api, config, logger)
        scheduler = build_scheduler(config, api, list_id, logger, metrics)

        if args.once:
            return run_once(lapi, scheduler, logger)

        daemon = Daemon(lapi=lapi, scheduler=scheduler, logger=logger)
        install_signal_handlers(daemon, logger)
        logger.info(
            f"Polling CrowdSec every {config.lapi_update_frequency}s, "
            f"updating Cloudflare every {config.update_frequency}s (Ctrl+C to stop)"
        )
        return daemon.run()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (RemoteError, requests.RequestException) as e:
        logger.error(f"Startup failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
