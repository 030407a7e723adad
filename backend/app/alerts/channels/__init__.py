"""
channels — Delivery provider backends.

Each provider exposes:
    send_multicast(tokens, title, body, data) → [PushOutcome, ...]

Providers are stateless beyond their SDK client. Batching, outcome
classification and token eviction live in the dispatcher.
"""
