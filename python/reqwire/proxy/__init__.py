"""Proxy configuration."""

from reqwire.proxy.builder import NoProxy, ProxyBuilder, system_proxies

__all__ = ["NoProxy", "ProxyBuilder", "system_proxies"]
