import secrets
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase

def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))

def generate_unique_order_id() -> str:
    """Millisecond timestamp plus a random suffix, both base-36.

    Collisions are unlikely but possible; the orders.unique_order_id
    constraint is what actually guarantees uniqueness.
    """
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{timestamp}-{suffix}".upper()
