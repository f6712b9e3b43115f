"""
Permission management feature module.

Implements role-based access control: the permission catalog, role priorities
and the member-management hierarchy.
"""
