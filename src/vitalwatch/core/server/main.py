"""VitalWatch server entry point: ``python -m vitalwatch.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from vitalwatch.core.config.settings import get_settings
from vitalwatch.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the VitalWatch MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.vw_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.vw_allow_insecure_bind and not _is_loopback_host(settings.vw_host):
        raise RuntimeError(
            "Refusing to bind VitalWatch to a non-loopback host without an auth layer. "
            "Set VW_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info("Starting VitalWatch server on %s:%d", settings.vw_host, settings.vw_port)

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.vw_host,
        port=settings.vw_port,
    )


if __name__ == "__main__":
    run()
