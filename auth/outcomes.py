"""
auth/outcomes.py -- The values an authorization checkpoint returns.

A checkpoint never raises to say "no". It returns one of:

  Admitted(identity)          -- continue to the next stage / the handler
  Unauthenticated(message)    -- 401; no usable identity
  Forbidden(message, ...)     -- 403; identity known, requirement unmet
  InfrastructureFailure(exc)  -- a store blew up after identity was established

Only auth/dependencies.py turns a terminal outcome into an HTTP error, at the
framework boundary. The body() methods produce the exact JSON bodies of the
public contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from auth.models import Identity


@dataclass(frozen=True)
class Admitted:
    identity: Identity
    status_code = 200


@dataclass(frozen=True)
class Unauthenticated:
    message: str
    detail: str | None = None  # populated only in DEBUG mode
    envelope: dict = field(default_factory=dict)  # extra top-level keys, e.g. {"success": False}
    status_code = 401

    def body(self) -> dict:
        body = {**self.envelope, "message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


@dataclass(frozen=True)
class Forbidden:
    message: str
    required: dict | None = None
    envelope: dict = field(default_factory=dict)
    status_code = 403

    def body(self) -> dict:
        body = {**self.envelope, "message": self.message}
        if self.required is not None:
            body["required"] = self.required
        return body


@dataclass(frozen=True)
class InfrastructureFailure:
    error: Exception
    status_code = 500


Outcome = Union[Admitted, Unauthenticated, Forbidden, InfrastructureFailure]
