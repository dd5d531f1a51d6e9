"""Background workers for async processing."""
from .status_poller import StatusPoller

__all__ = ["StatusPoller"]
