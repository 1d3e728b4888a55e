"""
HTTP client helper with standardized timeout configuration.

Every call to the Bot API and to file downloads goes through here, so a slow
Telegram endpoint cannot pin a dispatch task indefinitely.
"""

import httpx

# getFile downloads can be large photos; give reads more room than API calls
API_READ_TIMEOUT = 10.0
DOWNLOAD_READ_TIMEOUT = 30.0


def get_httpx_timeout(read: float = API_READ_TIMEOUT) -> httpx.Timeout:
    return httpx.Timeout(
        read,
        connect=5.0,
        read=read,
        write=5.0,
        pool=5.0,
    )


def create_httpx_client(read: float = API_READ_TIMEOUT) -> httpx.AsyncClient:
    """Create an httpx.AsyncClient with standardized timeout configuration."""
    return httpx.AsyncClient(timeout=get_httpx_timeout(read))
