"""PracticeGate: subscription entitlements, usage metering and compliance exports."""

__version__ = "0.1.0"
