"""HTTP routers for the shedding game server."""
