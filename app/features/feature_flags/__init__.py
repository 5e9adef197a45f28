"""
Feature gating feature module.

Global feature flags, per-owner (customer or supplier) access overrides and
per-customer visibility rules. Independent of roles and permissions.
"""
