"""
Source Handlers

Each handler verifies a source's webhook signature and converts its body
into a typed WebhookEvent.

Available Handlers:
- InChurchHandler: InChurch member and group webhooks
"""

from .base import BaseHandler
from .inchurch import InChurchHandler, SIGNATURE_PREFIX

__all__ = [
    "BaseHandler",
    "InChurchHandler",
    "SIGNATURE_PREFIX",
]
