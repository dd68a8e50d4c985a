"""Server-Sent Events streaming of request manager stats."""
import asyncio
import json
import logging
from typing import AsyncGenerator, Optional

from qr_guard.api.models import StatsResponse
from qr_guard.circuit_breaker import EmergencyCircuitBreaker
from qr_guard.request_manager import QRRequestManager

logger = logging.getLogger(__name__)


async def stream_stats_events(
    manager: QRRequestManager,
    breaker: EmergencyCircuitBreaker,
    interval: float = 2.0,
    limit: Optional[int] = None
) -> AsyncGenerator[str, None]:
    """
    Stream periodic stats snapshots as Server-Sent Events.

    Args:
        manager: Request manager to snapshot
        breaker: Emergency breaker whose trips are included
        interval: Seconds between snapshots
        limit: Stop after this many events (None streams until disconnect)

    Yields:
        SSE-formatted strings: "data: {json}\n\n"
    """
    sent = 0
    try:
        while limit is None or sent < limit:
            if sent:
                await asyncio.sleep(interval)
            snapshot = StatsResponse.from_stats(manager.get_stats(), breaker.snapshot())
            yield f"data: {json.dumps(snapshot.model_dump(mode='json'))}\n\n"
            sent += 1

        yield f"data: {json.dumps({'done': True})}\n\n"

    except asyncio.CancelledError:
        logger.info("Stats stream cancelled by client")
        raise

    except Exception as e:
        logger.error(f"Stats stream error: {e}", exc_info=True)
        yield f"data: {json.dumps({'error': str(e), 'done': True})}\n\n"
