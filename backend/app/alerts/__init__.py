"""
alerts — Alert broadcast and delivery pipeline.

Sub-modules:
    models         — Alert aggregate, statuses, stats, user targets
    store / orm /
    sql_store      — Persistence contracts, in-memory and SQLAlchemy backends
    audience       — Audience → (push_targets, all_targets)
    channels/      — Push provider backends (FCM, simulation)
    dispatcher     — Batched push delivery and token eviction
    fanout         — In-app notification records
    processor      — One "deliver this alert" job end to end
    queue          — arq / inline job queues, retry policy, dead letters
    alert_service  — Create + schedule, list, get, delete
    container      — Wiring for the API process and the worker
"""
