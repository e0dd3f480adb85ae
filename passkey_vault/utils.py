"""
Security and logging helpers for Passkey Vault
"""

import re
from typing import Any, Optional


def short_id(value: Optional[str], keep: int = 16) -> str:
    """Truncate a credential or challenge identifier for log output"""
    if not value:
        return "<none>"
    return value if len(value) <= keep else value[:keep] + "..."


def sanitize_for_log(data: Any, max_length: int = 500) -> Any:
    """
    Remove sensitive keys and truncate long strings before logging

    Security: ceremony payloads carry PRF outputs, wrapped keys and signatures;
    none of these may reach a log line.

    Args:
        data: Data structure to sanitize (dict, list, string, or primitive)
        max_length: Maximum length for string values (default: 500)

    Returns:
        Sanitized copy with sensitive fields redacted

    Example:
        >>> sanitize_for_log({"user_id": "u1", "prf_output": "c2VjcmV0"})
        {'user_id': 'u1', 'prf_output': '***REDACTED***'}
    """
    SENSITIVE_KEYS = {
        'token', 'access_token', 'jwt', 'authorization', 'bearer',
        'secret', 'secret_key', 'jwt_secret_key',
        'private_key', 'signature',
        'prf', 'prf_output', 'results', 'first', 'second',
        'root_key', 'unit_key', 'master_key', 'encryption_key',
        'ciphertext', 'wrapped_key',
    }

    SECRET_PATTERNS = [
        (r'token\s*[=:]\s*\S+', 'token=***REDACTED***'),
        (r'secret\s*[=:]\s*\S+', 'secret=***REDACTED***'),
        (r'bearer\s+\S+', 'bearer ***REDACTED***'),
    ]

    if isinstance(data, dict):
        return {
            k: '***REDACTED***' if str(k).lower() in SENSITIVE_KEYS else sanitize_for_log(v, max_length)
            for k, v in data.items()
        }
    elif isinstance(data, list):
        return [sanitize_for_log(item, max_length) for item in data]
    elif isinstance(data, tuple):
        return tuple(sanitize_for_log(item, max_length) for item in data)
    elif isinstance(data, (bytes, bytearray)):
        return f"<{len(data)} bytes>"
    elif isinstance(data, str):
        result = data
        for pattern, replacement in SECRET_PATTERNS:
            result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

        if len(result) > max_length:
            result = result[:max_length] + '...(truncated)'

        return result
    else:
        return data
