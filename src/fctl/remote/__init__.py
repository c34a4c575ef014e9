"""Control plane access."""

from .client import ControlPlaneClient, RemoteJobAPI

__all__ = ["ControlPlaneClient", "RemoteJobAPI"]
