"""
Credential checks and destination allow-listing.

Both are plain predicates: a failed check is `False` (or `None` from the
parsers), never an exception.
"""

import base64, binascii
from typing import Iterable, Optional, Tuple

Credential = Tuple[str, str]


################################################################
#                  Proxy-Authorization
################################################################

def parse_basic_credentials(header_value: Optional[str]) -> Optional[Credential]:
    """
    Decode a `Basic <base64(user:pass)>` header value.

    Returns a (username, password) pair, or None if the value is absent,
    uses another scheme, is not valid base64/UTF-8, or has no colon.
    The split happens on the first colon, so passwords may contain colons.
    """
    if not header_value:
        return None

    parts = header_value.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None

    try:
        decoded = base64.b64decode(parts[1].strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):  # UnicodeDecodeError is a ValueError
        return None

    username, colon, password = decoded.partition(":")
    if not colon:
        return None
    return username, password


def verify(header_value: Optional[str], expected_user: str, expected_pass: str) -> bool:
    """
    Check a Proxy-Authorization value against the configured pair.

    Plain string equality; the comparison is not constant-time.
    """
    credential = parse_basic_credentials(header_value)
    if credential is None:
        return False
    username, password = credential
    return username == expected_user and password == expected_pass


################################################################
#                  Destination allow-list
################################################################

def strip_port(hostname: str) -> str:
    """
    `example.com:8080` -> `example.com`, `[::1]:443` -> `::1`.
    A bare IPv6 literal (several colons, no brackets) is left alone.
    """
    if hostname.startswith("["):
        end = hostname.find("]")
        return hostname[1:end] if end != -1 else hostname
    if hostname.count(":") == 1:
        return hostname.split(":")[0]
    return hostname


def allowed(hostname: str, allow_list: Iterable[str]) -> bool:
    """
    Is `hostname` (port optional) on the allow-list?

    An empty allow-list allows every destination. Matching is exact
    except for ASCII case.
    """
    allow_list = tuple(allow_list)
    if not allow_list:
        return True
    host = strip_port(hostname).lower()
    return any(host == entry.lower() for entry in allow_list)
