"""
Audit trail of sensitive actions.

Writes are best effort and never fail the action being audited.
"""
