from __future__ import annotations

from syncbridge.schemas.sync_event import Provenance, SyncEvent


def should_skip(event: SyncEvent) -> bool:
    """True when the change was written by the engine itself.

    The capture agent is configured to filter these out already; that filter is
    configuration, so the pipeline checks again before doing any work.
    """
    return event.provenance is Provenance.SYNC_ENGINE
