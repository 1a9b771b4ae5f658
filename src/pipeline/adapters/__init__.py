"""Source adapters for HealthSync.

Each adapter implements the SourceAdapter ABC and handles:
- Fetching (or receiving) source-native payloads
- Converting units and timestamps to the canonical forms
- Tagging every record with its source id

Available adapters:
    SamsungHealthAdapter — Samsung Health SDK (Galaxy Watch push + history)
    GoogleFitAdapter     — Google Fit REST API (Wear OS history)
    ScreenTimeAdapter    — Phone foreground time from app-state transitions
    ManualBatchAdapter   — Uploaded batch envelopes
"""

from src.pipeline.adapters.google_fit import GoogleFitAdapter
from src.pipeline.adapters.manual_batch import ManualBatchAdapter
from src.pipeline.adapters.samsung_health import SamsungHealthAdapter
from src.pipeline.adapters.screen_time import ScreenTimeAdapter

__all__ = [
    "SamsungHealthAdapter",
    "GoogleFitAdapter",
    "ScreenTimeAdapter",
    "ManualBatchAdapter",
]

# Registry: source_id → adapter class
ADAPTER_REGISTRY: dict[str, type] = {
    "samsung_health": SamsungHealthAdapter,
    "google_fit": GoogleFitAdapter,
    "screen_time": ScreenTimeAdapter,
    "manual_batch": ManualBatchAdapter,
}


def get_adapter(source_id: str) -> "type":
    """Return the adapter class for a given source slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for source '{source_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[source_id]
