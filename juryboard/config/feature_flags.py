"""
Feature Flags Configuration

Centralized feature flag management.
All feature flags are loaded from environment variables.
"""
import os


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


class FeatureFlags:
    """
    Feature flags for the application.

    To add a new feature flag:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Use it in your code
    """

    # Background scheduler + event-triggered automation rules
    FEATURE_AUTOMATION_ENGINE: bool = get_bool_env('FEATURE_AUTOMATION_ENGINE', True)

    # Recompile and broadcast live reports after every ledger write
    FEATURE_LIVE_REPORTS: bool = get_bool_env('FEATURE_LIVE_REPORTS', True)

    # Redis Pub/Sub fan-out across workers (in-memory otherwise)
    FEATURE_REDIS_BROADCAST: bool = get_bool_env('FEATURE_REDIS_BROADCAST', False)

    @classmethod
    def is_enabled(cls, flag_name: str) -> bool:
        """Check if a feature flag is enabled by name."""
        return getattr(cls, flag_name, False)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if not key.startswith('_') and isinstance(value, bool)
        }


# Singleton instance for easy importing
feature_flags = FeatureFlags()
