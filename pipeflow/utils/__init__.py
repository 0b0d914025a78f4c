from .retry import compute_backoff, retry_on_conflict, schedule_retry

__all__ = ["compute_backoff", "retry_on_conflict", "schedule_retry"]
