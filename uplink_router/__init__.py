"""Control plane of a multi-link bonded video uplink."""

__version__ = "0.1.0"
