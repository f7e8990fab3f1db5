"""
Job Queue — Decouples webhook intake from destination delivery.

- The HTTP boundary ENQUEUES accepted webhooks and returns immediately
- Delivery workers DEQUEUE jobs and hand them to the router
- Supports Redis (production) and an in-memory queue (dev, tests)
"""
