"""
Permission management feature module.

Implements hierarchical role-based access control with time-bounded grants,
explicit denies, resource-specific grants and contextual policies.
"""
