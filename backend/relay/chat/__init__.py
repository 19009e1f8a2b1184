"""Chat rooms, presence, message history and the WebSocket protocol."""
