"""
cradlelog: encrypted data layer for infant-care logs.

Guest users keep their data in a local table store; signed-in users go to a
hosted backend. Sensitive fields are encrypted per value in both cases.
"""

__version__ = "0.1.0"

__all__ = [
    "common",
    "config",
    "logs",
    "session",
    "state",
]
