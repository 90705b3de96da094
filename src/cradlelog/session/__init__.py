"""Guest/remote session state and the children that logs are recorded for."""

from .facade import RemoteAuth, SessionContext, SessionMode, UnknownChildError, capitalize

__all__ = ["RemoteAuth", "SessionContext", "SessionMode", "UnknownChildError", "capitalize"]
