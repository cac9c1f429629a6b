from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

import httpx

from transcript_pipeline import __version__

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = f"transcript-pipeline/{__version__}"
_PROC_VERSION = Path("/proc/version")


@dataclass(frozen=True)
class TransportConfig:
    timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 30.0
    max_connections: int = 5
    keepalive: bool = True
    force_ipv4: bool = False
    proxy_url: str | None = None
    user_agent: str = DEFAULT_USER_AGENT
    verify_tls: bool = True
    auto_tune: bool = True

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.connect_timeout_seconds <= 0:
            raise ValueError("connect_timeout_seconds must be > 0")
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if not self.user_agent.strip():
            raise ValueError("user_agent must be non-empty")

    def with_environment_proxy(self) -> TransportConfig:
        if self.proxy_url:
            return self
        proxy = os.environ.get("HTTPS_PROXY") or os.environ.get("https_proxy") or os.environ.get("HTTP_PROXY")
        if not proxy:
            return self
        return replace(self, proxy_url=proxy)

    def tuned_for_host(self, *, proc_version: Path = _PROC_VERSION) -> TransportConfig:
        """Apply the conservative WSL2 profile when running under WSL2."""
        if not self.auto_tune or not detect_wsl2(proc_version):
            return self
        logger.info("WSL2 detected; using single-connection IPv4 transport without keep-alive")
        return replace(
            self,
            max_connections=1,
            keepalive=False,
            force_ipv4=True,
            timeout_seconds=min(self.timeout_seconds, 180.0),
        )


def detect_wsl2(proc_version: Path = _PROC_VERSION) -> bool:
    try:
        content = proc_version.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    lowered = content.lower()
    return "microsoft" in lowered or "wsl" in lowered


def build_timeout(config: TransportConfig) -> httpx.Timeout:
    return httpx.Timeout(config.timeout_seconds, connect=config.connect_timeout_seconds)


def build_http_client(config: TransportConfig, *, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    limits = httpx.Limits(
        max_connections=config.max_connections,
        max_keepalive_connections=config.max_connections if config.keepalive else 0,
    )
    if transport is None:
        transport = httpx.HTTPTransport(
            verify=config.verify_tls,
            limits=limits,
            local_address="0.0.0.0" if config.force_ipv4 else None,
            proxy=config.proxy_url,
        )
    headers = {"User-Agent": config.user_agent}
    if not config.keepalive:
        headers["Connection"] = "close"
    return httpx.Client(
        timeout=build_timeout(config),
        headers=headers,
        transport=transport,
        follow_redirects=True,
    )
