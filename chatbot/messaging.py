import logging
from functools import lru_cache
from typing import Dict, Optional

from twilio.rest import Client
from twilio.twiml.messaging_response import MessagingResponse

from chatbot.config import settings
from chatbot.utils import format_whatsapp_number

logger = logging.getLogger(__name__)


def build_twiml_reply(text: str) -> str:
    """Wrap a reply in the TwiML document Twilio expects from the webhook."""
    twiml = MessagingResponse()
    twiml.message(text)
    return str(twiml)


class TwilioMessenger:
    """Sends outbound WhatsApp messages through the Twilio REST API."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
    ):
        self.account_sid = account_sid if account_sid is not None else settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self.from_number = format_whatsapp_number(from_number or settings.TWILIO_PHONE_NUMBER)
        self._client = None

    def _get_client(self) -> Client:
        if self._client is None:
            if not self.account_sid or not self.auth_token:
                raise RuntimeError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be set")
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send(self, to: str, body: str) -> Dict[str, Optional[str]]:
        """
        Send a WhatsApp message.

        Args:
            to: Recipient, already formatted with the 'whatsapp:' prefix
            body: Message text

        Returns:
            Dict with the Twilio message sid and status
        """
        message = self._get_client().messages.create(from_=self.from_number, body=body, to=to)
        logger.info(f"Message sent to {to}: sid={message.sid}, status={message.status}")
        return {"sid": message.sid, "status": message.status}


@lru_cache()
def get_messenger() -> TwilioMessenger:
    """Dependency returning the shared messenger configured from settings."""
    return TwilioMessenger()
