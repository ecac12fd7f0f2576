"""Security utilities: connection codes, push token display."""

import secrets


# --- Connection code ---

def format_code(num: int) -> str:
    """Render a connection code as exactly 4 ASCII digits."""
    return f"{num:04d}"


def pick_code(candidates: list[str]) -> str:
    """Pick one code uniformly at random."""
    return candidates[secrets.randbelow(len(candidates))]


# --- Push tokens ---

def truncate_token(token: str, length: int = 20) -> str:
    """Shorten a push token for logs and API responses."""
    if len(token) <= length:
        return token
    return token[:length] + "..."
