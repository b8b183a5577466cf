"""Push (WebSocket) and poll transports sharing one event surface."""
