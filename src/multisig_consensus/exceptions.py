"""Exception hierarchy for the multi-signature consensus core.

All consensus exceptions inherit from ConsensusException, enabling:
- Consistent error handling between the orchestrator and the reconciler
- HTTP status code mapping in the upstream interception layer
- Structured error responses with error codes

Usage:
    from multisig_consensus.exceptions import (
        AuthorizationError,
        InvalidStateError,
        ProofVerificationError,
    )

    try:
        summary = await orchestrator.submit_signature(...)
    except ProofVerificationError as e:
        # Recoverable: the operation is still PENDING
        return e.to_dict()

All exceptions have:
- error_code: Machine-readable error code (e.g., "INVALID_STATE")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class ConsensusException(Exception):
    """Base exception for all consensus errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "CONSENSUS_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class AuthorizationError(ConsensusException):
    """Actor lacks the capability required for the action."""

    error_code = "AUTHORIZATION_ERROR"
    http_status = 403

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        capability: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if user_id:
            details["user_id"] = user_id
        if capability:
            details["capability"] = capability
        super().__init__(message, details=details)


class InvalidStateError(ConsensusException):
    """Requested transition is not legal from the operation's current state."""

    error_code = "INVALID_STATE"
    http_status = 409

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        current_status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation_id:
            details["operation_id"] = operation_id
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, details=details)


class ProofVerificationError(ConsensusException):
    """Proof was rejected. The operation stays PENDING."""

    error_code = "PROOF_VERIFICATION_FAILED"
    http_status = 422

    def __init__(
        self,
        reason: str,
        operation_id: Optional[str] = None,
        proof_type: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["reason"] = reason
        if operation_id:
            details["operation_id"] = operation_id
        if proof_type:
            details["proof_type"] = proof_type
        super().__init__(f"Signature verification failed: {reason}", details=details)
        self.reason = reason


class NotFoundError(ConsensusException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class PolicyError(ConsensusException):
    """Quorum policy is malformed (e.g. m > n)."""

    error_code = "POLICY_ERROR"
    http_status = 400


class ConcurrencyConflictError(ConsensusException):
    """Wallet was modified concurrently (version mismatch)."""

    error_code = "CONFLICT"
    http_status = 409

    def __init__(
        self,
        workspace_id: str,
        expected_version: int,
        actual_version: int,
    ) -> None:
        super().__init__(
            f"Wallet for workspace '{workspace_id}' changed concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            details={
                "workspace_id": workspace_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class DuplicateOperationError(ConsensusException):
    """Operation id already exists in the store."""

    error_code = "DUPLICATE_OPERATION"
    http_status = 409

    def __init__(self, operation_id: str) -> None:
        super().__init__(
            f"Operation '{operation_id}' already exists",
            details={"operation_id": operation_id},
        )


__all__ = [
    "ConsensusException",
    "AuthorizationError",
    "InvalidStateError",
    "ProofVerificationError",
    "NotFoundError",
    "PolicyError",
    "ConcurrencyConflictError",
    "DuplicateOperationError",
]
