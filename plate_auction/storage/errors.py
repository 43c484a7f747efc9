"""Storage errors shared by every backend."""

from __future__ import annotations

from typing import Any


class ConflictError(RuntimeError):
    """Raised when a compare-and-set precondition no longer holds."""


class DuplicateRecordError(RuntimeError):
    """Raised when creating a document whose identifier already exists."""


def check_preconditions(
    listing_id: str,
    current: dict[str, Any],
    *,
    expected_status: str | None = None,
    expected_version: int | None = None,
) -> None:
    if expected_status is not None and current.get("status") != expected_status:
        raise ConflictError(
            f"listing {listing_id} is {current.get('status')!r}, expected {expected_status!r}"
        )
    if expected_version is not None and int(current.get("version") or 0) != expected_version:
        raise ConflictError(
            f"listing {listing_id} is at version {current.get('version')}, expected {expected_version}"
        )


def apply_patch(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    updated = dict(current)
    updated.update(patch)
    updated["version"] = int(current.get("version") or 0) + 1
    return updated
