import asyncio
import httpx
import logging

logger = logging.getLogger(__name__)


class BackendClient:
    """HTTP client for handing finished calls to the procurement backend.

    The backend owns the durable call record and the job queue; this client
    posts the record and, when the call needs one, a follow-up job
    (human callback or email fallback). Each POST is retried once after a
    2-second backoff and never raises.
    """

    def __init__(
        self,
        *,
        records_url: str,
        jobs_url: str,
        webhook_secret: str,
        timeout: float = 15.0,
        retry_delay: float = 2.0,
    ):
        self.records_url = records_url
        self.jobs_url = jobs_url
        self.secret = webhook_secret
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Webhook-Secret": self.secret,
        }

    async def _post_with_retry(self, url: str, payload: dict, label: str) -> dict:
        """POST with one retry on failure."""
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    return resp.json()
            except Exception as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %.0fs: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def send_call_record(self, payload: dict) -> dict:
        """Persist the final call record (transcript, quotes, outcome)."""
        return await self._post_with_retry(self.records_url, payload, "Call record sync")

    async def enqueue_job(self, payload: dict) -> dict:
        """Enqueue a follow-up job (human_followup or email_fallback)."""
        return await self._post_with_retry(self.jobs_url, payload, "Follow-up job enqueue")
