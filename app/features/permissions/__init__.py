"""
Permission management feature module.

Role-based access control with per-user ALLOW / DENY overrides and a
protected super role, resolved over an immutable policy snapshot.
"""
