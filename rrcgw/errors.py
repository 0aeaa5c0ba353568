"""Gateway error taxonomy.

Every inbound event handler is a failure boundary. Subclasses of
``GatewayError`` carry a human readable ``message`` that is safe to deliver to
the initiating client as an ``error`` event; anything else is logged and
contained to the event that raised it.
"""

from __future__ import annotations


class GatewayError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationFailure(GatewayError):
    """Bad, absent or mismatched credential. Terminates the connection attempt."""


class AuthorizationDenied(GatewayError):
    """Role insufficient for the requested action."""


class PolicyDenied(GatewayError):
    """Rate limited, banned sender or link filtered."""


class NotFound(GatewayError):
    """Unknown target session or subject."""


class CollaboratorFailure(GatewayError):
    """An identity store call failed; surfaced to the actor as a generic notice."""
