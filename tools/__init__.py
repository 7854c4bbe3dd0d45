"""
Tools Package
Pure building blocks for the DoseLedger engine: time helpers, the schedule
compiler, the grace period resolver, the event classifier and the delivery
gateways.

Submodules are imported directly (``from tools.schedule_compiler import ...``)
because models.py depends on tools.time_utils.
"""
