"""
Opaque page tokens for listing reads.

A token is the base64 (url-safe, unpadded) text of a non-negative row offset.
Anything that does not decode to such an offset is treated as the first page.
"""

import base64
import binascii


def encode_page_token(offset: int) -> str:
    """
    Encode a row offset as an opaque page token.

    Args:
        offset: Zero-based offset of the first row of the next page

    Returns:
        Token string

    Raises:
        ValueError: If offset is negative
    """
    if offset < 0:
        raise ValueError(f"Page offset must be non-negative, got {offset}")
    return base64.urlsafe_b64encode(str(int(offset)).encode("ascii")).decode("ascii").rstrip("=")


def decode_page_token(token: str | None) -> int:
    """
    Decode a page token back to a row offset.

    Missing or malformed tokens decode to 0. Plain decimal tokens are accepted
    too, which keeps hand-written tokens (CLI, tests) usable.
    """
    if not token:
        return 0
    text = token.strip()
    padded = text + "=" * (-len(text) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("ascii")
        if decoded.isdigit():
            return int(decoded)
    except (binascii.Error, UnicodeError, ValueError):
        pass
    if text.isdigit():
        return int(text)
    return 0
