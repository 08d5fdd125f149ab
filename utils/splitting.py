"""Strategies for splitting long outbound messages into postable chunks.

A split strategy is any callable taking ``(message, max_length)`` and
returning the list of chunks to post, in order.
"""
from typing import Callable, List

SplitStrategy = Callable[[str, int], List[str]]

ELLIPSIS = " ..."


def split_none(message: str, max_length: int) -> List[str]:  # pylint: disable=unused-argument
    """Post the message as-is and let the server truncate it."""
    return [message]


def split_words(message: str, max_length: int) -> List[str]:
    """
    Split on word boundaries.
    - every chunk except the last ends with " ..."
    - a word longer than the limit is cut mid-word
    """
    if len(message) <= max_length:
        return [message]

    limit = max_length - len(ELLIPSIS)
    if limit <= 0:
        raise ValueError(f"max_length {max_length} is too small to split a message")

    posts: List[str] = []
    start = 0
    while len(message) - start > max_length:
        space = message.rfind(" ", start, start + limit + 1)
        if space <= start:
            posts.append(message[start:start + limit] + ELLIPSIS)
            start += limit
        else:
            posts.append(message[start:space] + ELLIPSIS)
            start = space + 1
    posts.append(message[start:])
    return posts
