"""
Documents served by the data endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from .store import DurableStore

DOCUMENT_PREFIX = "doc:"


def document_key(key: str) -> str:
    """Durable key holding the caller document ``key``, outside the cache namespace."""
    return f"{DOCUMENT_PREFIX}{key}"


def default_document(key: str, region: str, city: str) -> Dict[str, Any]:
    """Placeholder document for keys that were never stored."""
    now = datetime.now(timezone.utc).isoformat()
    return {
        "id": key,
        "data": {
            "message": f"Hello from {city}, {region}!",
            "timestamp": now,
            "version": "1.0.0",
            "region": region,
            "city": city,
            "servedFrom": "default",
        },
        "timestamp": now,
        "version": 1,
        "metadata": {
            "generatedAt": now,
            "cacheStatus": "fresh",
            "size": 0,
            "format": "json",
            "region": region,
            "city": city,
        },
    }


async def load_document(store: DurableStore, key: str, region: str = "unknown", city: str = "unknown") -> Dict[str, Any]:
    """Read ``key`` from the durable store, falling back to :func:`default_document`.

    Store failures propagate as :class:`shared.errors.DurableStoreError`.
    """
    record = await store.get_record(document_key(key))
    if record is None:
        return default_document(key, region, city)

    document = record.model_dump(mode="json")
    document["id"] = key
    document["metadata"].update(
        {"cacheStatus": "fresh", "region": region, "city": city, "servedFrom": "database"}
    )
    return document
