"""Time helpers shared by the models and services."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive ``datetime`` (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
