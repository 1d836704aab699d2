"""
Logging utilities for the consensus core with sensitive data masking.

Proof material (password hashes, TOTP tokens, authenticator signatures,
biometric templates) must never reach log sinks. Components log proof data
only after passing it through mask_sensitive_data().

Usage:
    from multisig_consensus.logging import get_logger, mask_sensitive_data

    logger = get_logger(__name__)
    logger.debug("Proof rejected: %s", mask_sensitive_data(proof_data))
"""
from __future__ import annotations

import logging
import re
from typing import Any, Final, Optional, Sequence

MASK_PATTERN: Final[str] = "***REDACTED***"
MAX_LOG_MESSAGE_LENGTH: Final[int] = 10000

SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
    "password",
    "password_hash",
    "salt",
    "secret",
    "token",
    "signature",
    "authenticator_data",
    "client_data_json",
    "template_hash",
    "device_attestation",
    "certificate",
    "private_key",
    "credential",
    "credentials",
    "authorization",
})

_SENSITIVE_FRAGMENTS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "token",
    "key",
    "credential",
    "signature",
)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the multisig_consensus namespace."""
    return logging.getLogger(name)


def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, optionally showing first/last characters.

    Args:
        value: The value to mask
        show_chars: Number of characters to show at start and end

    Returns:
        Masked string
    """
    if not value or len(value) <= show_chars * 2:
        return MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return key_lower in SENSITIVE_FIELDS or any(
        fragment in key_lower for fragment in _SENSITIVE_FRAGMENTS
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask
        mask_pattern: Pattern to replace sensitive values with
        _depth: Current recursion depth (internal)
        _max_depth: Maximum recursion depth to prevent infinite loops

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)):
                result[key] = mask_pattern
            elif additional_fields and key in additional_fields:
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(
                    value,
                    additional_fields,
                    mask_pattern,
                    _depth + 1,
                    _max_depth,
                )
        return result

    elif isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(
                item,
                additional_fields,
                mask_pattern,
                _depth + 1,
                _max_depth,
            )
            for item in data
        )

    elif isinstance(data, str):
        return _truncate(data)

    return data


_PEM_BLOCK = re.compile(
    r"-----BEGIN [A-Z ]+-----.*?(?:-----END [A-Z ]+-----|\Z)",
    re.DOTALL,
)


def _truncate(text: str) -> str:
    # PEM blocks embedded in free text, including an unterminated one
    text = _PEM_BLOCK.sub("***PEM***", text)
    if len(text) > MAX_LOG_MESSAGE_LENGTH:
        return text[:MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"
    return text


__all__ = [
    "MASK_PATTERN",
    "get_logger",
    "mask_value",
    "is_sensitive_key",
    "mask_sensitive_data",
]
