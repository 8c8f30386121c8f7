"""
Common building blocks for steamguard-bot.

Modules:
- codes: login codes, confirmation keys and device ids
- timesync: adjusted clock against the platform's time endpoint
- protobufs: RPC message schemas and method registry
- transport: RPC client with retry/backoff and result-code mapping
- rate_limiter: sliding-window throttle shared per host
- config: environment-driven settings
- passkeys: passphrase sources (environment, SSM)
- errors: exception taxonomy
"""

__all__ = [
    "codes",
    "config",
    "errors",
    "passkeys",
    "protobufs",
    "rate_limiter",
    "timesync",
    "transport",
]
