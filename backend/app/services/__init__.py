"""Domain services behind the HTTP and websocket handlers."""
