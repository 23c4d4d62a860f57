"""Client-side transfer tooling."""

from .transfer_client import TransferAPIClient  # noqa: F401
from .transfer_queue import TransferQueue, choose_strategy, plan_parts  # noqa: F401
