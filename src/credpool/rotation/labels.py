"""Display label helpers shared by the pool and the profile switcher."""

import re
from collections.abc import Iterable


_WHITESPACE = re.compile(r"\s+")


def sanitize_label(label: str) -> str:
    """Trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", label.strip())


def ensure_unique_label(taken_labels: Iterable[str], preferred: str, fallback: str = "profile") -> str:
    """Return `preferred`, or `preferred 2`, `preferred 3`, ... if already taken.

    Comparison is case-insensitive. Callers renaming an item should leave the
    item's own label out of `taken_labels`.
    """
    base = sanitize_label(preferred) or fallback
    taken = {label.lower() for label in taken_labels}
    if base.lower() not in taken:
        return base

    suffix = 2
    while f"{base} {suffix}".lower() in taken:
        suffix += 1
    return f"{base} {suffix}"


def email_local_part(email: str | None) -> str | None:
    if not email:
        return None
    local = email.split("@", 1)[0].strip()
    return local or None
