"""Pack verification surfaces."""

from .public import mask_serial, public_view
from .service import STATUS_MESSAGES, VerifyService, VerifyState

__all__ = ["STATUS_MESSAGES", "VerifyService", "VerifyState", "mask_serial", "public_view"]
