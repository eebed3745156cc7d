"""Worker processes, their heartbeat registry and the supervisor that restarts them."""
