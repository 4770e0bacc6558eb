"""Run persistence."""

from agentgraph.storage.run_store import (
    FileRunStore,
    InMemoryRunStore,
    RunStore,
    generate_run_id,
)

__all__ = ["FileRunStore", "InMemoryRunStore", "RunStore", "generate_run_id"]
