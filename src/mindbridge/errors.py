from __future__ import annotations


class MindBridgeError(Exception):
    """Base class for failures surfaced to callers of the core."""

    code = "internal_error"


class NotFound(MindBridgeError):
    code = "not_found"


class Unauthorized(MindBridgeError):
    """The actor lacks the owner/admin right required for the operation."""

    code = "unauthorized"


class Conflict(MindBridgeError):
    code = "conflict"


class TransientStoreError(MindBridgeError):
    code = "unavailable"


class InvalidRequest(MindBridgeError):
    code = "invalid_request"
