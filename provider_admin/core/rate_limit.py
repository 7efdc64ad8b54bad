"""
Shared slowapi limiter.

Authenticated routes are keyed on the Authorization header; the login
route overrides the key with the client address.
"""
from slowapi import Limiter

from provider_admin.features.users.dependencies import get_authorization_header


limiter = Limiter(key_func=get_authorization_header)
