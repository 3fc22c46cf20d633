"""Utility functions shared by the deployment services."""

import hashlib
from typing import Any

from .constants import ACCOUNT_PLACEHOLDER, PARTITION_PLACEHOLDER, REGION_PLACEHOLDER


def content_hash(data: str | bytes) -> str:
    """SHA-256 hex digest of some content.

    Example:
        >>> content_hash("abc")[:8]
        'ba7816bf'
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def replace_env_placeholders(
    value: str | None,
    *,
    account: str | None = None,
    region: str | None = None,
    partition: str | None = None,
) -> str | None:
    """Substitute ``${AWS::AccountId}``, ``${AWS::Region}`` and ``${AWS::Partition}``.

    Placeholders whose replacement is not given are left untouched.
    """
    if value is None:
        return None
    if account is not None:
        value = value.replace(ACCOUNT_PLACEHOLDER, account)
    if region is not None:
        value = value.replace(REGION_PLACEHOLDER, region)
    if partition is not None:
        value = value.replace(PARTITION_PLACEHOLDER, partition)
    return value


def replace_placeholders_in(data: Any, **replacements: str | None) -> Any:
    """Apply ``replace_env_placeholders`` to every string inside a JSON-like structure."""
    if isinstance(data, str):
        return replace_env_placeholders(data, **replacements)
    if isinstance(data, dict):
        return {key: replace_placeholders_in(value, **replacements) for key, value in data.items()}
    if isinstance(data, list):
        return [replace_placeholders_in(item, **replacements) for item in data]
    return data


def s3_url_suffix(region: str) -> str:
    """Domain suffix of the S3 endpoint for a region."""
    if region.startswith("cn-"):
        return "amazonaws.com.cn"
    if region.startswith("us-iso-"):
        return "c2s.ic.gov"
    if region.startswith("us-isob-"):
        return "sc2s.sgov.gov"
    return "amazonaws.com"


def format_size(size_bytes: int) -> str:
    """Format a byte count as a human readable string."""
    if size_bytes == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    size = float(size_bytes)
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    if unit_index == 0:
        return f"{int(size)} {units[unit_index]}"
    return f"{size:.1f} {units[unit_index]}"
