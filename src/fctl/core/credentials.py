"""
Profile Credential Store

Reads and writes control plane profiles kept in ``<home>/credentials`` (one
ini section per profile) and the default profile pointer in ``<home>/config``.
"""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx

from fctl.domain.errors import ConfigurationError
from fctl.domain.models import Profile

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "default"
TOKEN_LIFETIME = timedelta(hours=24)


def normalize_host(host: str) -> str:
    """Return host as an http(s) URL, defaulting the scheme to https."""
    host = host.strip()
    if not host:
        raise ConfigurationError(message="Host cannot be empty", code="invalid_host")
    if not host.startswith(("http://", "https://")):
        host = f"https://{host}"
    try:
        parsed = httpx.URL(host)
    except httpx.InvalidURL as err:
        raise ConfigurationError(
            message=f"Invalid URL '{host}': {err}", code="invalid_host"
        ) from err
    if not parsed.host:
        raise ConfigurationError(
            message=f"Invalid URL '{host}'. Provide a valid http(s) URL",
            code="invalid_host",
        )
    return host.rstrip("/")


@dataclass(slots=True)
class ProfileStore:
    """Application-facing repository for stored control plane profiles."""

    home_dir: Path

    @property
    def credentials_path(self) -> Path:
        return self.home_dir / "credentials"

    @property
    def config_path(self) -> Path:
        return self.home_dir / "config"

    def resolve_name(self, profile: str | None) -> str:
        """Resolve the profile to use: explicit, configured default, then 'default'."""
        if profile:
            return profile
        parser = self._read(self.config_path)
        configured = parser.get(DEFAULT_PROFILE, "profile", fallback="")
        return configured or DEFAULT_PROFILE

    def load(self, profile: str | None = None, *, check_expiry: bool = True) -> Profile:
        """Load one profile, validating required keys and token expiry."""
        name = self.resolve_name(profile)
        if not self.credentials_path.exists():
            raise ConfigurationError(
                message=f"Could not read credentials file at {self.credentials_path}. "
                "Run 'fctl login' first",
                code="credentials_missing",
            )
        parser = self._read(self.credentials_path)
        if not parser.has_section(name):
            raise ConfigurationError(
                message=f"Profile '{name}' not found in {self.credentials_path}",
                code="profile_missing",
            )
        section = parser[name]
        host = section.get("control_plane_url", "")
        username = section.get("username", "")
        token = section.get("token", "")
        if not host or not username or not token:
            raise ConfigurationError(
                message=f"Profile '{name}' is missing one of control_plane_url, username, or token",
                code="profile_incomplete",
            )
        expiry = self._parse_expiry(name, section.get("token_expiry", ""))
        if check_expiry and expiry is not None and datetime.now(UTC) > expiry:
            raise ConfigurationError(
                message=f"Token for profile '{name}' has expired. Please run 'fctl login' again",
                code="token_expired",
            )
        return Profile(
            name=name,
            control_plane_url=normalize_host(host),
            username=username,
            token=token,
            token_expiry=expiry,
        )

    def save(self, *, profile: str, host: str, username: str, token: str) -> None:
        """Store credentials for a profile and make it the default."""
        self.home_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        credentials = self._read(self.credentials_path)
        if not credentials.has_section(profile):
            credentials.add_section(profile)
        credentials[profile]["control_plane_url"] = host
        credentials[profile]["username"] = username
        credentials[profile]["token"] = token
        self._write(self.credentials_path, credentials, private=True)

        config = self._read(self.config_path)
        if not config.has_section(DEFAULT_PROFILE):
            config.add_section(DEFAULT_PROFILE)
        config[DEFAULT_PROFILE]["profile"] = profile
        self._write(self.config_path, config)

    def touch_expiry(self, profile: str, *, now: datetime | None = None) -> datetime:
        """Extend the token expiry of a verified profile."""
        expiry = (now or datetime.now(UTC)) + TOKEN_LIFETIME
        credentials = self._read(self.credentials_path)
        if not credentials.has_section(profile):
            raise ConfigurationError(
                message=f"Profile '{profile}' not found in {self.credentials_path}",
                code="profile_missing",
            )
        credentials[profile]["token_expiry"] = expiry.replace(microsecond=0).isoformat()
        self._write(self.credentials_path, credentials, private=True)
        return expiry

    def has_profile(self, profile: str) -> bool:
        return self._read(self.credentials_path).has_section(profile)

    @staticmethod
    def _parse_expiry(name: str, raw: str) -> datetime | None:
        if not raw:
            return None
        try:
            expiry = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as err:
            raise ConfigurationError(
                message=f"Could not parse token_expiry for profile '{name}': {err}",
                code="invalid_expiry",
            ) from err
        return expiry if expiry.tzinfo else expiry.replace(tzinfo=UTC)

    @staticmethod
    def _read(path: Path) -> configparser.ConfigParser:
        parser = configparser.ConfigParser(interpolation=None)
        if path.exists():
            parser.read(path, encoding="utf-8")
        return parser

    @staticmethod
    def _write(path: Path, parser: configparser.ConfigParser, private: bool = False) -> None:
        with open(path, "w", encoding="utf-8") as handle:
            parser.write(handle)
        if private:
            os.chmod(path, 0o600)
        logger.debug("Wrote %s", path)
