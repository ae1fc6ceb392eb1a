import re

_UNSAFE_KEY_CHARS = re.compile(r"[.#$\[\]]")


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def email_to_key(email: str | None) -> str:
    """
    Turn an email into a lookup key that is safe as a document path segment.
    Lowercases, trims, then replaces `. # $ [ ]` with `_`. Applying it twice
    gives the same key as applying it once.
    """
    return _UNSAFE_KEY_CHARS.sub("_", normalize_email(email))


def presence_key(email: str | None, role: str) -> str:
    return f"{email_to_key(email)}-{role}"


def conversation_id(customer_id: str, vehicle_id: int | str) -> str:
    return f"{customer_id}_{vehicle_id}"
