"""
Media Hub — one view over the audio/video playing across many pages.

A page agent in each page picks the one element worth reporting and streams
its state to the hub.  The hub keeps the canonical session list, pushes it
to every connected observer, and routes observer commands back to the page
that owns the session.

Services:
  hub.py       — coordinator: session registry, observer channels, routing
  page.py      — page host: runs a MediaAgent and its /command endpoint
  observer.py  — UI-side channel client with reconnect and local cache
"""

__version__ = "1.0.0"
