"""
Bypass Kernel - approval workflow core for administrative bypasses.

A versioned, audit-first approval engine with:
- Idempotent workflow creation keyed by bypass request
- Compare-and-swap persistence of the workflow aggregate
- Sequential, role-ranked approval levels with delegation and escalation
- Audit entries co-committed with every state change
"""

__version__ = "0.1.0"
