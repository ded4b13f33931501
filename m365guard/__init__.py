"""m365guard: rule-driven Microsoft 365 sign-in impersonation detection."""

__version__ = "0.1.0"
