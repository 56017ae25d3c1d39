"""HTTP and WebSocket surface of the courier relay."""
