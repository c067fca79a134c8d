import asyncio
import httpx
import logging

from tubemap.session import CallSession

logger = logging.getLogger(__name__)


def build_routing_payload(session: CallSession) -> dict:
    """The outward routing tuple for downstream consumers."""
    return {
        "call_id": session.call_id,
        "phone": session.phone,
        "station": session.current_station.value,
        "segment": session.segment.value if session.segment else None,
        "segment_confidence": session.segment_confidence,
        "recommended_destination": (
            session.recommended_destination.value if session.recommended_destination else None
        ),
        "selected_destination": (
            session.selected_destination.value if session.selected_destination else None
        ),
        "fast_tracked": session.fast_tracked,
        "captured_info": session.captured_info.to_dict(),
        "journey_flags": dict(session.journey_flags),
    }


class RoutingClient:
    """HTTP client that delivers routing decisions to the downstream consumer.

    Retries once with a 2-second backoff on failure and never raises.
    """

    def __init__(
        self,
        *,
        url: str,
        webhook_secret: str = "",
        timeout: float = 10.0,
        retry_delay: float = 2.0,
    ):
        self.url = url
        self.secret = webhook_secret
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    async def _post_with_retry(self, payload: dict, label: str) -> dict:
        """POST with one retry on failure."""
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    return resp.json() if resp.content else {"success": True}
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %.0fs: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def send_routing_decision(self, session: CallSession, event: str = "destination_reached") -> dict:
        payload = {"event": event, **build_routing_payload(session)}
        return await self._post_with_retry(payload, f"[{session.call_id}] Routing sync ({event})")
