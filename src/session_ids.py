"""Session id tokens used in tracker URLs.

A tracker URL may point at several sessions at once, e.g.
``/tracker/session/abc+def``. Older links joined ids with ``~`` or spaces,
some were encoded as a whole and some id by id, and a few went through the
encoder twice. Everything here folds those variants into one list of ids.
"""

import re
from urllib.parse import quote, unquote

SESSION_DELIMITER = "+"
MAX_SESSION_IDS = 8
SESSION_PATH_PREFIX = "/tracker/session/"

# '%2B' stays literal only when the token could not be decoded.
SEPARATOR_RE = re.compile(r"(?:[+~\s]|%2[Bb])+")
ESCAPE_RE = re.compile(r"%[0-9A-Fa-f]{2}")
BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def percent_decode(value: str) -> str:
    """Decode one layer of percent-encoding, raising ValueError on bad input."""
    if BAD_ESCAPE_RE.search(value):
        raise ValueError(f"malformed percent escape in {value!r}")
    # UnicodeDecodeError is a ValueError
    return unquote(value, errors="strict")


def decode_fully(value: str) -> str:
    """Percent-decode until a fixed point, keeping the last good value on error."""
    current = value
    while True:
        try:
            decoded = percent_decode(current)
        except ValueError:
            return current
        if decoded == current:
            return current
        current = decoded


def resolve_session_ids(raw_token: str | None) -> list[str]:
    """Turn a raw path token into at most MAX_SESSION_IDS distinct session ids.

    An empty list means no session was named; it is not an error.
    """
    if not raw_token:
        return []

    decoded = decode_fully(str(raw_token))

    session_ids = []
    seen = set()
    for entry in SEPARATOR_RE.split(decoded):
        # an entry decoded on its own can still hold a delimiter
        pieces = SEPARATOR_RE.split(decode_fully(entry)) if ESCAPE_RE.search(entry) else [entry]
        for piece in pieces:
            piece = piece.strip()
            if not piece or piece in seen:
                continue
            seen.add(piece)
            session_ids.append(piece)

    return session_ids[:MAX_SESSION_IDS]


def build_session_token(session_ids) -> str:
    """Encode each id on its own, then join with the delimiter."""
    return SESSION_DELIMITER.join(quote(str(session_id), safe="") for session_id in session_ids)


def build_session_path(session_ids, prefix: str = SESSION_PATH_PREFIX) -> str:
    return f"{prefix}{build_session_token(session_ids)}"
