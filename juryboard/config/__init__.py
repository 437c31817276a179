from .settings import settings
from .feature_flags import feature_flags
