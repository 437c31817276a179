"""
Shared slowapi limiter.

Lives outside main.py so route modules can decorate endpoints without
importing the application.
"""
from slowapi import Limiter

from juryboard.rbac import voter_rate_key

limiter = Limiter(key_func=voter_rate_key)
