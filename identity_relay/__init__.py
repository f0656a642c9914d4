"""Identity Relay – OpenAI-compatible gateway over a rotating identity pool.

Chat-completion requests are forwarded to a single upstream chat service.
The upstream limits every session credential to a daily request quota, so
the gateway keeps a pool of synthetic ``browserId`` identities, spreads
traffic over the least-used ones, retires them once they approach the quota
and generates replacements in the background.
"""

__version__ = "1.0.0"
