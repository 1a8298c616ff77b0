"""
Identifier helpers

Bank identifiers and usernames are opaque string keys. The empty string and
the all-zero hex address ("0x" followed only by zeros) are reserved to mean
"no record" and are never assigned to a real bank or customer. Any other
string, including "0" or whitespace, is an ordinary key.
"""

import re

ZERO_ADDRESS = "0x" + "0" * 40

_ZERO_HEX = re.compile(r'0x0+', re.IGNORECASE)


def is_absent_key(key) -> bool:
    """True if key is the reserved absent sentinel (or not a string at all)"""
    if not isinstance(key, str):
        return True
    return key == "" or bool(_ZERO_HEX.fullmatch(key))
