"""
InChurch Handler

Verifies and parses InChurch member webhooks.
"""

import hmac
import hashlib
import logging
from typing import Any, Dict

import pydantic

from ...common.errors import ValidationError
from ...common.schemas import WebhookEvent
from .base import BaseHandler

logger = logging.getLogger("pastoral.ingest.handlers.inchurch")

SIGNATURE_PREFIX = "sha256="


class InChurchHandler(BaseHandler):
    """
    Handler for InChurch webhooks.

    Signature header format: ``sha256=<hex hmac-sha256 of the raw body>``.
    Without a configured signing secret every request is rejected.
    """

    def __init__(self, signing_secret: str = ""):
        """
        Initialize InChurch handler.

        Args:
            signing_secret: Shared secret configured in InChurch
        """
        super().__init__("inchurch")
        self._signing_secret = signing_secret
        if not signing_secret:
            logger.warning("No InChurch signing secret configured, all webhooks will be rejected")

    def compute_signature(self, body: bytes) -> str:
        digest = hmac.new(
            self._signing_secret.encode(),
            body,
            hashlib.sha256,
        ).hexdigest()
        return f"{SIGNATURE_PREFIX}{digest}"

    def verify_signature(self, body: bytes, signature: str) -> bool:
        if not self._signing_secret or not signature:
            return False

        expected = self.compute_signature(body)
        return hmac.compare_digest(expected.encode(), signature.strip().encode())

    def parse_event(self, raw_data: Dict[str, Any]) -> WebhookEvent:
        try:
            return WebhookEvent.model_validate(raw_data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid webhook event: {e.errors(include_url=False)}") from e
