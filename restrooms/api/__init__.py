"""HTTP routers for the restroom directory."""
