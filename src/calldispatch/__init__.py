"""
Outbound call batch orchestration engine.

Dispatches batches of calls to a voice provider, tracks every call through its
lifecycle from provider webhooks, and drives each batch to a terminal state.
"""

__version__ = "0.1.0"
