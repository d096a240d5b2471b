"""
Control messages pages send to the edge worker.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from shared.errors import UnknownControlMessageError


class ControlCommand(str, Enum):
    SKIP_WAITING = "skipWaiting"
    CLEAR_CACHE = "clearCache"
    LOGOUT = "logout"


class ControlMessage(BaseModel):
    """Body of ``POST /__sw__/message``."""

    command: ControlCommand


def decode_command(raw: Any) -> ControlCommand:
    """Decode a bare command string or a ``{"command": ...}`` object.

    Raises:
        UnknownControlMessageError: for anything else.
    """
    if isinstance(raw, ControlCommand):
        return raw

    if isinstance(raw, str):
        try:
            return ControlCommand(raw)
        except ValueError:
            raise UnknownControlMessageError(raw) from None

    if isinstance(raw, dict):
        try:
            return ControlMessage.model_validate(raw).command
        except ValidationError:
            raise UnknownControlMessageError(raw) from None

    raise UnknownControlMessageError(raw)
