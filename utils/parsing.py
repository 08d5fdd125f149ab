"""Helpers for scraping values out of chat transport responses.

The transport exposes some information only inside HTML pages or free-form
text, so these functions dig it out.
"""
import re
from typing import Optional

from bs4 import BeautifulSoup

_FKEY_RE = re.compile(r"^[0-9a-f]{32}$")
_SECONDS_RE = re.compile(r"\d+")


def parse_fkey(page: str) -> Optional[str]:
    """
    Find the anti-forgery token ("fkey") in an HTML page.
    - the token lives in a hidden input named "fkey"
    - returns None if the page has no valid token
    """
    soup = BeautifulSoup(page, "html.parser")
    field = soup.find("input", attrs={"name": "fkey"}) or soup.find("input", id="fkey")
    if field is None:
        return None
    value = (field.get("value") or "").strip()
    return value if _FKEY_RE.match(value) else None


def can_post_to_room(page: str) -> bool:
    """Determine whether the logged-in account can post to a room.

    The message input box is only rendered when posting is allowed; frozen
    or protected rooms omit it.
    """
    soup = BeautifulSoup(page, "html.parser")
    return soup.find("textarea", id="input") is not None


def parse_wait_seconds(body: str) -> Optional[int]:
    """Pull the wait time out of a rate-limit response body.

    Args:
        body: e.g. "You can perform this action again in 2 seconds"

    Returns:
        Number of seconds to wait, or None if the body contains no number
    """
    m = _SECONDS_RE.search(body or "")
    return int(m.group(0)) if m else None
