"""Loopback HTTP access to the session's tools."""
from .router import IpcToolRouter

__all__ = ["IpcToolRouter"]
