"""Error taxonomy for the order sync engine.

Fatal errors (transport, rate limit, pagination) end the current store's run.
Advisory errors (ambiguity, unknown status, drift) are never raised across
a run boundary; they are collected into the run's error summary.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OrderSyncError(RuntimeError):
    """Base class for all sync errors."""

    code = "sync_error"

    def to_summary(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class TransportError(OrderSyncError):
    """Network / timeout failure talking to an upstream API."""

    code = "transport_error"

    def __init__(self, message: str, *, store_identifier: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.store_identifier = store_identifier
        self.status_code = status_code

    def to_summary(self) -> Dict[str, Any]:
        data = super().to_summary()
        data["status_code"] = self.status_code
        return data


class UpstreamError(TransportError):
    """Non-2xx response other than throttling."""

    code = "upstream_error"


class RateLimitError(OrderSyncError):
    """Explicit throttling response from the upstream (HTTP 429)."""

    code = "rate_limited"

    def __init__(self, message: str, *, store_identifier: Optional[str] = None, retry_after: float = 60.0):
        super().__init__(message)
        self.store_identifier = store_identifier
        self.retry_after = retry_after

    def to_summary(self) -> Dict[str, Any]:
        data = super().to_summary()
        data["retry_after"] = self.retry_after
        return data


class PaginationExhaustedError(OrderSyncError):
    """Request budget spent before the upstream pagination terminated."""

    code = "pagination_exhausted"

    def __init__(self, message: str, *, requests_made: int = 0, last_token: Any = None):
        super().__init__(message)
        self.requests_made = requests_made
        self.last_token = last_token


class IdentityAmbiguityError(OrderSyncError):
    code = "identity_ambiguity"

    def __init__(self, store_identifier: str, external_id: str, candidates: List[str], chosen: str):
        super().__init__(
            f"{len(candidates)} local orders match store={store_identifier} external_id={external_id}; "
            f"using {chosen}"
        )
        self.store_identifier = store_identifier
        self.external_id = external_id
        self.candidates = candidates
        self.chosen = chosen

    def to_summary(self) -> Dict[str, Any]:
        data = super().to_summary()
        data.update({"external_id": self.external_id, "candidates": self.candidates, "chosen": self.chosen})
        return data


class UnknownStatusError(OrderSyncError):
    code = "unknown_status"

    def __init__(self, store_identifier: str, external_id: str, label: Optional[str]):
        super().__init__(f"Unknown upstream status {label!r} for store={store_identifier} external_id={external_id}")
        self.store_identifier = store_identifier
        self.external_id = external_id
        self.label = label

    def to_summary(self) -> Dict[str, Any]:
        data = super().to_summary()
        data.update({"external_id": self.external_id, "label": self.label})
        return data


class DriftDetectedError(OrderSyncError):
    """Local high-water mark is above the upstream's actual maximum."""

    code = "drift_detected"

    def __init__(self, store_identifier: str, local_max: Optional[str], upstream_max: Optional[str]):
        super().__init__(
            f"Local max external id {local_max} exceeds upstream max {upstream_max} for store={store_identifier}"
        )
        self.store_identifier = store_identifier
        self.local_max = local_max
        self.upstream_max = upstream_max

    def to_summary(self) -> Dict[str, Any]:
        data = super().to_summary()
        data.update({"local_max": self.local_max, "upstream_max": self.upstream_max})
        return data


class CursorConflictError(OrderSyncError):
    """The cursor row changed between read and compare-and-set write."""

    code = "cursor_conflict"


class StoreNotFoundError(OrderSyncError):
    code = "store_not_found"


class StoreIdentifierLockedError(OrderSyncError):
    """Identifier change refused because orders already reference the store."""

    code = "store_identifier_locked"


class RunFinalizedError(OrderSyncError):
    """Attempt to modify a run that already has a terminal outcome."""

    code = "run_finalized"


class DeliveryCredentialMissingError(OrderSyncError):
    code = "delivery_credential_missing"
