"""TCP connectivity probe for a freshly promoted primary."""
from __future__ import annotations

import asyncio
import logging

from .base import HealthProbe

logger = logging.getLogger("drcore.provider.probe")


class TcpHealthProbe(HealthProbe):
    """Open (and immediately close) a TCP connection to the database endpoint.

    ``host_template`` is formatted with ``server`` and ``database``, e.g.
    ``"{server}.db.internal"``.
    """

    def __init__(self, host_template: str = "{server}", port: int = 1433, timeout_s: float = 5.0) -> None:
        self._template = host_template
        self._port = port
        self._timeout = timeout_s

    async def probe(self, server: str, database: str) -> bool:
        host = self._template.format(server=server, database=database)
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, self._port), timeout=self._timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("Probe %s:%d failed: %s", host, self._port, exc)
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
