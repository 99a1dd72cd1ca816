"""Standalone SQL proxy service owning the per-tenant SQLite files."""

from .app import ProxyStore, create_proxy_app

__all__ = ["ProxyStore", "create_proxy_app"]
