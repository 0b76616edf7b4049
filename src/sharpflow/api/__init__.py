"""HTTP and WebSocket surface of the orchestrator."""
