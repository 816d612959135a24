"""Error taxonomy shared by the codec, the consensus adapters and the custody recorder.

Every error carries a stable upper-case ``code`` plus an optional human ``detail``.
Rejected custody transitions put the blocking invariant in ``detail`` so callers can show
it verbatim.
"""

from __future__ import annotations

from typing import Any, Mapping


class PackTraceError(RuntimeError):
    """Stable, caller-safe error surfaced as a reason code."""

    http_status = 500

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.detail = detail
        self.context = dict(context or {})
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class ValidationError(PackTraceError):
    """Input is malformed; never retried."""

    http_status = 400


class MalformedIdentifierError(ValidationError):
    def __init__(self, detail: str) -> None:
        super().__init__("MALFORMED_IDENTIFIER", detail)


class PayloadTooLargeError(ValidationError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            "PAYLOAD_TOO_LARGE",
            f"consensus messages are limited to {limit_bytes} bytes; received {size_bytes} bytes",
            context={"size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class AuthorizationError(PackTraceError):
    """Actor role or facility does not permit the action."""

    http_status = 403


class AuthenticationError(PackTraceError):
    """Caller identity was not supplied by the gateway."""

    http_status = 401


class NotFoundError(PackTraceError):
    http_status = 404


class ConflictError(PackTraceError):
    """Current batch or key state blocks the request; the caller may retry later."""

    http_status = 409


class UpstreamUnavailableError(PackTraceError):
    """The consensus log (submit gateway or mirror) could not be reached or refused the call."""

    http_status = 502


class DecodeError(PackTraceError):
    """A ledger message could not be decoded into the custody payload shape."""

    http_status = 502


def reason_code(exc: BaseException) -> str:
    if isinstance(exc, PackTraceError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
