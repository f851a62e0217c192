"""Failures that are reported back to a client as an ``error`` frame."""
from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for request failures that leave the connection open."""

    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class MalformedMessage(RelayError):
    default_message = "Invalid message format"


class PartyNotFound(RelayError):
    default_message = "Party not found"


class WrongPassword(RelayError):
    default_message = "Incorrect password"


class NotInParty(RelayError):
    default_message = "Not in a party"
