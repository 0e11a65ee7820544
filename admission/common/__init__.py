from .async_utils import guarded_call, retry_call
from .logging import log_event, short_address

__all__ = [
    "guarded_call",
    "log_event",
    "retry_call",
    "short_address",
]
