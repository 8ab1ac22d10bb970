"""HTTP, WebSocket and SSE surface of docflow."""
