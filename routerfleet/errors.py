from __future__ import annotations


class FleetError(RuntimeError):
    pass


class ConfigurationError(FleetError):
    """Vault key missing or invalid. Fatal at startup, never raised per call."""


class ValidationError(FleetError):
    """Malformed operation input, rejected before any dispatch begins."""


class NodeNotFoundError(FleetError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"node not found: {node_id}")
        self.node_id = node_id


class NodeOperationError(FleetError):
    """Base for failures scoped to one node's unit of work."""

    kind = "error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class CredentialError(NodeOperationError):
    kind = "credential"

    INVALID_BASE64 = "invalid_base64"
    INVALID_FORMAT = "invalid_ciphertext_format"
    DECRYPTION_FAILED = "decryption_failed"


class ConnectivityError(NodeOperationError):
    kind = "connectivity"

    def __init__(self, reason: str, *, status_code: int | None = None, detail: str = "") -> None:
        super().__init__(reason)
        self.status_code = status_code
        self.detail = detail


class NodeTimeoutError(NodeOperationError):
    kind = "timeout"

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__("timeout")
        self.timeout_seconds = timeout_seconds
