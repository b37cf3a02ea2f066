"""HTTP routers for the recording scheduler API."""
