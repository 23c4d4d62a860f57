"""Multi-tenant file platform core: access policies, presigned transfers and link sharing."""

from .config import TenantDriveConfig  # noqa: F401
from .runtime import TenantDriveRuntime  # noqa: F401
