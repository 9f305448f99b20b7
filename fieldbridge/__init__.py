"""
FieldBridge

Multi-protocol device gateway: polls field devices through protocol
drivers, publishes their data points and derived aliases to a state store
and turns state-store writes back into device writes.
"""

__version__ = "0.4.0"
