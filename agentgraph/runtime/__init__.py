"""Runtime: event bus, execution tracer, run service and its HTTP API."""
