import logging

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


async def send_sms(to_number: str, body: str, http_client: httpx.AsyncClient | None = None) -> bool:
    """Send an SMS through Twilio. Returns False when SMS is not configured; raises on delivery errors."""
    if not settings.sms_enabled:
        logger.debug("SMS disabled (Twilio not configured), skipping send")
        return False
    url = TWILIO_MESSAGES_URL.format(account_sid=settings.twilio_account_sid)
    data = {"From": settings.twilio_from_number, "To": to_number, "Body": body}
    auth = (settings.twilio_account_sid, settings.twilio_auth_token)
    if http_client is not None:
        resp = await http_client.post(url, data=data, auth=auth)
    else:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(url, data=data, auth=auth)
    if resp.status_code not in (200, 201):
        raise RuntimeError(f"Twilio returned {resp.status_code}: {resp.text[:300]}")
    logger.info("SMS sent to %s", to_number)
    return True
