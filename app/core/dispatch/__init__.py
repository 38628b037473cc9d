# app/core/dispatch/__init__.py
"""
Dispatch core: offers cleaning jobs to cleaners, one at a time, and
resolves the race between accept, decline and timeout.

- ``eligibility``   next candidate (property ranking, then landlord fallback)
- ``offers``        one time-boxed offer (attempt row first, then send)
- ``orchestrator``  entry point for (re)dispatching a job
- ``resolver``      accept / decline / timeout sweep (at most one winner)
- ``lifecycle``     create, assign, start, done, review, cancel, reminders
- ``commands``      inbound chat commands (/start linking, /done)

The core talks to storage and messaging only through ``ports``.
It must NOT import transport modules.
"""
