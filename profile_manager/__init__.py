"""
Tenant profile manager.

Converges declared Profiles and Contributors into namespaces, RBAC bindings, quotas and
mesh authorization policies, and serves the access-management API used to add/remove
contributors and profiles.
"""
