"""Gallery access tokens and the catalogue selection code."""

import secrets

# 32 random bytes -> 43 URL-safe characters.
TOKEN_BYTES = 32


def new_gallery_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def selection_code(filenames: list[str]) -> str:
    """Filenames joined for a catalogue search, e.g. `IMG_1.jpg OR IMG_7.jpg`."""

    return " OR ".join(name for name in filenames if name)
