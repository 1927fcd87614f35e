from .fs import write_json_atomic, write_text_atomic
from .retry import compute_backoff

__all__ = ["compute_backoff", "write_json_atomic", "write_text_atomic"]
