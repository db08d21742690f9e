"""
Custom exceptions for the feed client.

Exception hierarchy:
- FeedError (base)
  - TransportError: connect / handshake / read / write failures
  - ProtocolError: malformed or unrecognized frames
    - SubscriptionMismatchError: confirmation echoed the wrong kind/target
  - ReconnectBudgetExhausted: reconnect budget reached, feed gives up
  - ConfigurationError: invalid configuration, raised before any connection

Trade validation rejections are not exceptions; see ``RejectReason``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class FeedError(Exception):
    """Base exception for all feed errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class TransportError(FeedError):
    """Raised when the websocket cannot be opened, read or written."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.attempt = attempt
        details = details or {}
        if url:
            details["url"] = url
        if attempt:
            details["attempt"] = attempt
        super().__init__(message, component=component, details=details)


class ProtocolErrorReason(str, Enum):
    """Why a frame (or a record inside it) could not be decoded."""

    INVALID_JSON = "invalid_json"
    UNRECOGNIZED_FRAME = "unrecognized_frame"
    MISSING_FIELD = "missing_field"
    MALFORMED_NUMERIC = "malformed_numeric"
    INVALID_SIDE = "invalid_side"
    SUBSCRIPTION_MISMATCH = "subscription_mismatch"


class ProtocolError(FeedError):
    """Raised when a frame does not match the venue's schema."""

    def __init__(
        self,
        message: str,
        *,
        reason: ProtocolErrorReason = ProtocolErrorReason.UNRECOGNIZED_FRAME,
        field: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        self.field = field
        details = details or {}
        details["reason"] = reason.value
        if field:
            details["field"] = field
        # Raw frame text is never stored here to avoid log spam
        super().__init__(message, component=component, details=details)


class SubscriptionMismatchError(ProtocolError):
    """Raised when a subscription confirmation does not match any pending request."""

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[list[str]] = None,
        received: Optional[str] = None,
        component: Optional[str] = None,
    ) -> None:
        self.expected = expected or []
        self.received = received
        details: dict[str, Any] = {"expected": self.expected}
        if received:
            details["received"] = received
        super().__init__(
            message,
            reason=ProtocolErrorReason.SUBSCRIPTION_MISMATCH,
            component=component,
            details=details,
        )


class ReconnectBudgetExhausted(FeedError):
    """Raised when the configured number of consecutive failed attempts is reached."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.attempts = attempts
        details = details or {}
        details["attempts"] = attempts
        super().__init__(message, component=component, details=details)


class ConfigurationError(FeedError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)


class RejectReason(str, Enum):
    """Why the trade validator refused a trade. Counted, never raised."""

    DUPLICATE = "duplicate"
    INVALID_TIMESTAMP = "invalid_timestamp"
