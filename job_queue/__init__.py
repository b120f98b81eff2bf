"""
Welcome job queue — Decouples welcome delivery from the subscription request.

- Producers PUBLISH welcome jobs (services/welcome.py)
- WelcomeWorker CONSUMES them, waits out the delay, writes the DM
- Supports Redis Streams (production) and an in-memory queue (dev/tests)
"""
