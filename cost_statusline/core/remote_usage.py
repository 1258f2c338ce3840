"""
Remote usage client.

Fetches plan utilization and reset times from the OAuth usage endpoint.
The endpoint is optional: every failure path yields None and the window
falls back to what the transcripts show.
"""

import getpass
import hashlib
import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Optional

import httpx

from .transcripts import ROOTS_ENV, parse_timestamp

if TYPE_CHECKING:
    from ..config.loader import StatuslineConfig
    from ..storage.repository import PersistentCache

logger = logging.getLogger(__name__)

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
BETA_HEADER = "oauth-2025-04-20"
DEFAULT_TIMEOUT = 5.0
KEYCHAIN_SERVICE = "Claude Code-credentials"

TOKEN_ENV_VARS = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_AUTH_TOKEN")
USER_AGENT_ENV = "CLAUDE_STATUSLINE_USER_AGENT"
VERSION_ENV = "CLAUDE_CODE_VERSION"

KeychainLookup = Callable[[Mapping[str, str]], Optional[str]]


@dataclass(frozen=True)
class UsageLimit:
    """Utilization of one plan limit and when it resets."""
    utilization: Optional[float] = None
    resets_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, raw) -> Optional["UsageLimit"]:
        if not isinstance(raw, dict):
            return None
        utilization = raw.get("utilization")
        if isinstance(utilization, bool) or not isinstance(utilization, (int, float)):
            utilization = None
        return cls(
            utilization=float(utilization) if utilization is not None else None,
            resets_at=parse_timestamp(raw.get("resets_at")),
        )

    def to_dict(self) -> dict:
        return {
            "utilization": self.utilization,
            "resets_at": self.resets_at.isoformat() if self.resets_at else None,
        }


@dataclass(frozen=True)
class UsageSummary:
    """Parsed response of the usage endpoint."""
    five_hour: Optional[UsageLimit] = None
    seven_day: Optional[UsageLimit] = None
    seven_day_opus: Optional[UsageLimit] = None
    seven_day_sonnet: Optional[UsageLimit] = None
    extra_usage: Optional[dict] = None

    def to_dict(self) -> dict:
        def limit(value: Optional[UsageLimit]):
            return value.to_dict() if value is not None else None

        return {
            "five_hour": limit(self.five_hour),
            "seven_day": limit(self.seven_day),
            "seven_day_opus": limit(self.seven_day_opus),
            "seven_day_sonnet": limit(self.seven_day_sonnet),
            "extra_usage": self.extra_usage,
        }


def parse_usage_response(raw) -> UsageSummary:
    """Build a UsageSummary from the endpoint's JSON body.

    Raises:
        ValueError: If the body isn't a JSON object
    """
    if not isinstance(raw, dict):
        raise ValueError("Usage response must be a JSON object")
    extra = raw.get("extra_usage")
    return UsageSummary(
        five_hour=UsageLimit.from_dict(raw.get("five_hour")),
        seven_day=UsageLimit.from_dict(raw.get("seven_day")),
        seven_day_opus=UsageLimit.from_dict(raw.get("seven_day_opus")),
        seven_day_sonnet=UsageLimit.from_dict(raw.get("seven_day_sonnet")),
        extra_usage=extra if isinstance(extra, dict) else None,
    )


# ── Credentials ──────────────────────────────────────────────────────────────


def _token_from_credentials(text: str) -> Optional[str]:
    try:
        creds = json.loads(text)
    except ValueError:
        return None
    if not isinstance(creds, dict):
        return None
    oauth = creds.get("claudeAiOauth")
    token = oauth.get("accessToken") if isinstance(oauth, dict) else None
    token = token or creds.get("accessToken")
    return token if isinstance(token, str) and token.strip() else None


def keychain_service_name(env: Mapping[str, str]) -> str:
    """Keychain entry name; a custom config dir gets its own suffixed entry."""
    config_dir = env.get(ROOTS_ENV, "").strip()
    if not config_dir:
        return KEYCHAIN_SERVICE
    digest = hashlib.sha256(config_dir.encode("utf-8")).hexdigest()[:8]
    return f"{KEYCHAIN_SERVICE}-{digest}"


def read_keychain_token(env: Mapping[str, str]) -> Optional[str]:
    """Read the token from the macOS keychain; None elsewhere or on failure."""
    if sys.platform != "darwin":
        return None
    account = env.get("USER") or getpass.getuser()
    try:
        proc = subprocess.run(
            ["security", "find-generic-password", "-a", account, "-s", keychain_service_name(env), "-w"],
            capture_output=True,
            text=True,
            timeout=DEFAULT_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Keychain lookup failed: {e}")
        return None
    output = proc.stdout.strip()
    if proc.returncode != 0 or not output:
        return None
    return _token_from_credentials(output) or output


def find_oauth_token(
    roots: Iterable[Path],
    env: Optional[Mapping[str, str]] = None,
    keychain: KeychainLookup = read_keychain_token,
) -> Optional[str]:
    """Resolve an OAuth access token.

    Order: environment variables, macOS keychain, then
    ``<root>/.credentials.json`` under each configuration root.
    """
    env = os.environ if env is None else env
    for name in TOKEN_ENV_VARS:
        token = env.get(name, "").strip()
        if token:
            return token

    token = keychain(env)
    if token:
        return token

    for root in roots:
        path = Path(root) / ".credentials.json"
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            continue
        token = _token_from_credentials(text)
        if token:
            return token
    return None


def resolve_user_agent(version: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    explicit = env.get(USER_AGENT_ENV, "").strip()
    if explicit:
        return explicit
    version = version or env.get(VERSION_ENV, "").strip()
    return f"claude-code/{version}" if version else "claude-code"


def cache_key(env: Mapping[str, str]) -> str:
    """Persistent cache slot for the active configuration directory.

    Derived without reading any credential, so a cache hit never needs a
    token lookup.
    """
    config_dir = env.get(ROOTS_ENV, "").strip()
    return f"oauth_usage:{hashlib.sha256(config_dir.encode('utf-8')).hexdigest()[:16]}"


# ── HTTP client ──────────────────────────────────────────────────────────────


class RemoteUsageClient:
    """Thin httpx wrapper around the usage endpoint."""

    def __init__(
        self,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = "claude-code",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = token
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "anthropic-beta": BETA_HEADER,
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

    def fetch(self) -> dict:
        """GET the usage document.

        Raises:
            httpx.HTTPError: On transport failure or a non-2xx status
            ValueError: If the body isn't a JSON object
        """
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.get(USAGE_URL, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Usage response must be a JSON object")
        return data


def get_usage_summary(
    config: "StatuslineConfig",
    store: "PersistentCache",
    roots: Iterable[Path],
    version: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.BaseTransport] = None,
    keychain: KeychainLookup = read_keychain_token,
) -> Optional[UsageSummary]:
    """Fetch the usage summary through the persistent cache's TTL slot.

    The token is resolved only on a cache miss. Returns None when fetching
    is disabled, no token is found, or anything goes wrong on the way.
    """
    if not config.fetch_usage:
        return None
    env = os.environ if env is None else env

    def fetch() -> Optional[dict]:
        token = find_oauth_token(roots, env, keychain)
        if not token:
            logger.debug("No OAuth token found, skipping usage fetch")
            return None
        client = RemoteUsageClient(
            token,
            timeout=config.remote_timeout,
            user_agent=resolve_user_agent(version, env),
            transport=transport,
        )
        try:
            return client.fetch()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Usage fetch failed: {e}")
            return None

    raw = store.get_or_fetch(cache_key(env), fetch, ttl=config.api_ttl)
    if raw is None:
        return None
    try:
        return parse_usage_response(raw)
    except ValueError as e:
        logger.debug(f"Discarding usage response: {e}")
        return None
