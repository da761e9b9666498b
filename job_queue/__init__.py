"""
Event Bus — Decouples event intake from automation and session processing.

- CRM webhooks and action side effects PUBLISH events to the bus
- Consumers PULL events and hand them to the orchestrator
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
- The ConcurrencyLimiter serialises work per conversation inside a worker
"""
