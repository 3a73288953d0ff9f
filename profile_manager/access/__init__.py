"""Access decision service (admin sets, authorization, contributor/profile management).

Backs the management API; see `profile_manager.api.server` for the HTTP surface.
"""

from profile_manager.access.manager import AccessManager, parse_binding, parse_profile

__all__ = ["AccessManager", "parse_binding", "parse_profile"]
