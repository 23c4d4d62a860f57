"""HTTP API package (FastAPI) for the Tenant Drive runtime."""

from .server import create_app  # noqa: F401
