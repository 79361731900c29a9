"""
Base Handler

Abstract base class for source-specific webhook handlers.
Provides a common interface for turning signed raw bodies into typed events.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict

from ...common.errors import ValidationError
from ...common.schemas import WebhookEvent


class BaseHandler(ABC):
    """
    Abstract base class for webhook sources.

    Each handler must implement:
    - parse_event: Convert a decoded body into a WebhookEvent
    - verify_signature: Verify the webhook signature over the raw body
    """

    def __init__(self, source_name: str):
        """
        Initialize handler.

        Args:
            source_name: Name of the source (e.g., "inchurch")
        """
        self.source_name = source_name

    @abstractmethod
    def parse_event(self, raw_data: Dict[str, Any]) -> WebhookEvent:
        """
        Parse decoded event data into a WebhookEvent.

        Raises:
            ValidationError: if the payload does not match the event shape
        """
        pass

    @abstractmethod
    def verify_signature(self, body: bytes, signature: str) -> bool:
        """
        Verify the webhook signature.

        Args:
            body: Raw request body
            signature: Signature from headers

        Returns:
            True if signature is valid
        """
        pass

    def decode_body(self, body: bytes) -> Dict[str, Any]:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"Invalid JSON body: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("Event body must be a JSON object")
        return data
