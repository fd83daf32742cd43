"""Utility helpers for OpenBroadcast."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def normalize_email(value: str | None) -> str:
    """Return the canonical (trimmed, lower-cased) form of an email address."""
    return (value or "").strip().lower()


def display_name_from_email(email: str) -> str:
    """Return a fallback first name derived from the local part of an email."""
    local, _, _ = normalize_email(email).partition("@")
    return local or "guest"
