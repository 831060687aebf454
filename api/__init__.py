"""HTTP routes and WebSocket gateway for the Mafia room server."""
