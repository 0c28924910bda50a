"""Delivery status collaborator: provider interface, credential map and HTTP client."""

from .base import DeliveryStatus, DeliveryStatusProvider
from .credentials import DeliveryCredential, DeliveryCredentialMap, load_credential_map
from .status_codes import DELIVERY_STATUS_LABELS, TERMINAL_DELIVERY_CODES, delivery_status_label

__all__ = [
    "DeliveryStatus",
    "DeliveryStatusProvider",
    "DeliveryCredential",
    "DeliveryCredentialMap",
    "load_credential_map",
    "DELIVERY_STATUS_LABELS",
    "TERMINAL_DELIVERY_CODES",
    "delivery_status_label",
]
