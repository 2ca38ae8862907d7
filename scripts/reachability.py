"""Network reachability checks used by status

Both checks bind their socket to the tunnel address, so the source-address
rule sends them through the tunnel the same way replies from the protected
service leave. Every check is bounded by a timeout and reports failure
instead of hanging.
"""

import socket
from typing import Optional

import requests
from requests.adapters import HTTPAdapter

from log_config import get_logger

logger = get_logger("lnclear.reachability")


class SourceAddressAdapter(HTTPAdapter):
    """HTTPAdapter whose connections originate from a fixed local address"""

    def __init__(self, source_address: str, **kwargs):
        self.source_address = source_address
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["source_address"] = (self.source_address, 0)
        return super().init_poolmanager(*args, **kwargs)


def outbound_ip(source: Optional[str], url: str, timeout: float = 5.0) -> Optional[str]:
    """Public IP as seen by an IP-echo service

    Args:
        source: Local address to bind; None uses the default route
        url: Service that answers with the caller's address in plain text
        timeout: Connect and read timeout in seconds

    Returns:
        The reported address, or None when unreachable
    """
    session = requests.Session()
    if source:
        adapter = SourceAddressAdapter(source)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
    try:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
        return resp.text.strip() or None
    except requests.RequestException as e:
        logger.debug(f"Outbound IP check failed: {e}")
        return None
    finally:
        session.close()


def port_reachable(source: Optional[str], host: str, port: int, timeout: float = 5.0) -> bool:
    """TCP connect test to host:port from source"""
    try:
        with socket.create_connection(
            (host, port),
            timeout=timeout,
            source_address=(source, 0) if source else None,
        ):
            return True
    except OSError as e:
        logger.debug(f"Port check {host}:{port} failed: {e}")
        return False
