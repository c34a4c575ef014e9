"""
Login Command Implementation

Stores control plane credentials as a named profile and verifies them.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from rich.console import Console

from fctl.core.credentials import ProfileStore, normalize_host
from fctl.domain.errors import FctlDomainError
from fctl.domain.models import Profile
from fctl.domain.results import CommandResult

console = Console()


class LoginError(Exception):
    """Raised when login command fails"""


class _UserClientPort(Protocol):
    def current_user(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


def login(
    *,
    store: ProfileStore,
    host: str,
    username: str,
    token: str,
    profile: str,
    client_factory: Callable[[Profile], _UserClientPort],
    now: datetime | None = None,
) -> CommandResult:
    """Save a profile, verify it against the control plane and refresh its expiry.

    Raises:
        LoginError: If the host is invalid, the profile cannot be written or
            the control plane rejects the credentials.
    """
    try:
        url = normalize_host(host)
        store.save(profile=profile, host=url, username=username, token=token)
        stored = store.load(profile, check_expiry=False)
        client = client_factory(stored)
        try:
            user = client.current_user()
        finally:
            client.close()
        expiry = store.touch_expiry(profile, now=now)
    except (FctlDomainError, OSError) as err:
        console.print(f"[red]✗ Login failed: {err}[/red]")
        raise LoginError(str(err)) from err
    console.print(f"[green]✓[/green] Logged in to {url} as {username} (profile '{profile}')")
    return CommandResult(
        success=True,
        message=f"Logged in as {username}",
        data={
            "profile": profile,
            "controlPlaneUrl": url,
            "user": user.get("userName") or user.get("username") or username,
            "tokenExpiry": expiry.isoformat(),
        },
    )
