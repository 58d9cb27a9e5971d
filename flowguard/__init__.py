"""flowguard: outbound-call resilience layer."""

__version__ = "0.1.0"
